from urllib.parse import parse_qs

import httpx
import pytest

from backend.app.orchestration.classify import (
    MLClassifier,
    RuleBasedClassifier,
    Unavailable,
    build_default_classifiers,
    parse_ml_response,
    parse_rule_response,
)

API_URL = "https://moderation.test/1.0/text/check.json"

RULE_RESPONSE = {
    "status": "success",
    "request": {"id": "req_123", "timestamp": 1717243200.0, "operations": 1},
    "profanity": {"matches": [{"type": "sexual", "intensity": "high", "match": "xxx", "start": 0, "end": 3}]},
    "personal": {"matches": [{"type": "email", "match": "a@b.io", "start": 5, "end": 11}]},
    "link": {"matches": []},
}

ML_RESPONSE = {
    "status": "success",
    "request": {"id": "req_456"},
    "moderation_classes": {
        "available": ["sexual", "toxic"],
        "sexual": 0.02,
        "toxic": 0.91,
    },
}


def _adapter(cls, handler):
    return cls(API_URL, "user", "secret", transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_rule_classifier_posts_form_and_parses(moderation_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json=RULE_RESPONSE)

    findings = await _adapter(RuleBasedClassifier, handler).classify("hello", moderation_config)

    assert seen["mode"] == "rules"
    assert seen["text"] == "hello"
    assert seen["api_user"] == "user"
    assert seen["categories"] == ",".join(moderation_config.rule_based_categories)
    assert [(f.category, f.intensity, f.subtype) for f in findings] == [
        ("profanity", "high", "sexual"),
        ("personal", None, "email"),
    ]
    assert all(f.request_id == "req_123" for f in findings)


@pytest.mark.anyio
async def test_ml_classifier_parses_scores(moderation_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json=ML_RESPONSE)

    findings = await _adapter(MLClassifier, handler).classify("hello", moderation_config)

    assert seen["mode"] == "ml"
    assert seen["models"] == "general"
    assert {f.category: f.score for f in findings} == {"sexual": 0.02, "toxic": 0.91}


@pytest.mark.anyio
async def test_non_2xx_is_unavailable(moderation_config):
    result = await _adapter(RuleBasedClassifier, lambda r: httpx.Response(502)).classify("hi", moderation_config)
    assert result == Unavailable("rule-based", "http_502")


@pytest.mark.anyio
async def test_timeout_is_unavailable(moderation_config):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    result = await _adapter(MLClassifier, handler).classify("hi", moderation_config)
    assert result == Unavailable("ml-based", "timeout")


@pytest.mark.anyio
async def test_connection_error_is_unavailable(moderation_config):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = await _adapter(MLClassifier, handler).classify("hi", moderation_config)
    assert result == Unavailable("ml-based", "transport_error")


@pytest.mark.anyio
async def test_failure_status_is_unavailable(moderation_config):
    body = {"status": "failure", "error": {"type": "credentials_error", "message": "bad"}}
    result = await _adapter(RuleBasedClassifier, lambda r: httpx.Response(200, json=body)).classify(
        "hi", moderation_config
    )
    assert result == Unavailable("rule-based", "status_failure")


@pytest.mark.anyio
async def test_invalid_json_is_unavailable(moderation_config):
    result = await _adapter(RuleBasedClassifier, lambda r: httpx.Response(200, text="<html>")).classify(
        "hi", moderation_config
    )
    assert result == Unavailable("rule-based", "invalid_response")


@pytest.mark.anyio
async def test_malformed_ml_classes_are_unavailable(moderation_config):
    body = {"status": "success", "request": {"id": "req_9"}, "moderation_classes": [["toxic", 0.9]]}
    result = await _adapter(MLClassifier, lambda r: httpx.Response(200, json=body)).classify("hi", moderation_config)
    assert result == Unavailable("ml-based", "invalid_response")
    assert parse_ml_response(body) == []


def test_parsers_ignore_malformed_entries():
    assert parse_rule_response({"status": "success", "profanity": {"matches": ["junk"]}, "spam": None}) == []
    assert parse_ml_response({"status": "success", "moderation_classes": {"toxic": "high", "flag": True}}) == []


def test_ml_scores_clamped():
    findings = parse_ml_response({"moderation_classes": {"toxic": 1.7, "sexual": -0.2}})
    assert {f.category: f.score for f in findings} == {"toxic": 1.0, "sexual": 0.0}


def test_no_credentials_means_no_adapters():
    class _Settings:
        CLASSIFIER_API_URL = API_URL
        CLASSIFIER_API_USER = ""
        CLASSIFIER_API_SECRET = ""

    assert build_default_classifiers(_Settings()) == {"rule": None, "ml": None}
