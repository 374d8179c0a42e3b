"""Adapters for the external text classifiers.

Both adapters expose ``classify(text, config)`` and return either a list of
raw findings or an ``Unavailable`` value. They never raise for network, HTTP
or parsing problems: the pipeline decides what an outage means.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx

from ..config import ModerationConfig, get_settings
from ..models.safety import Finding, ViolationCategory

logger = logging.getLogger(__name__)

RULE_BASED = ViolationCategory.RULE_BASED.value
ML_BASED = ViolationCategory.ML_BASED.value

# Keys of a rule-mode response that are not categories
_ENVELOPE_KEYS = {"status", "request", "error"}


@dataclass(frozen=True)
class Unavailable:
    """A classifier could not be consulted for this message."""

    source: str
    reason: str


ClassifierResult = Union[List[Finding], Unavailable]


class ClassifierAdapter(Protocol):
    source: str

    async def classify(self, text: str, config: ModerationConfig) -> ClassifierResult: ...


class _TextModerationAdapter:
    """Shared transport for the rule and ML modes of the text moderation API."""

    source = "unknown"
    mode = ""

    def __init__(
        self,
        api_url: str,
        api_user: str,
        api_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_user = api_user
        self.api_secret = api_secret
        self._transport = transport

    def _form(self, text: str, config: ModerationConfig) -> Dict[str, str]:
        return {
            "text": text,
            "lang": config.language or "en",
            "mode": self.mode,
            "api_user": self.api_user,
            "api_secret": self.api_secret,
        }

    async def _post(self, form: Dict[str, str], timeout: float) -> Union[Dict[str, Any], Unavailable]:
        # Single attempt; retries belong to the caller
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(self.api_url, data=form)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException:
            logger.warning("%s classifier timed out after %ss", self.source, timeout)
            return Unavailable(self.source, "timeout")
        except httpx.HTTPStatusError as he:
            logger.warning("%s classifier returned HTTP %s", self.source, he.response.status_code)
            return Unavailable(self.source, f"http_{he.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning("%s classifier request failed: %s", self.source, e)
            return Unavailable(self.source, "transport_error")
        except ValueError as e:
            logger.warning("%s classifier returned invalid JSON: %s", self.source, e)
            return Unavailable(self.source, "invalid_response")

        if not isinstance(data, dict) or data.get("status") != "success":
            status = data.get("status") if isinstance(data, dict) else None
            logger.warning("%s classifier answered with status=%s", self.source, status)
            return Unavailable(self.source, f"status_{status or 'unknown'}")
        return data


class RuleBasedClassifier(_TextModerationAdapter):
    """Categorical matches (profanity, drug, weapon, ...) with intensity labels."""

    source = RULE_BASED
    mode = "rules"

    async def classify(self, text: str, config: ModerationConfig) -> ClassifierResult:
        form = self._form(text, config)
        form["categories"] = ",".join(config.rule_based_categories)
        if config.country_hints:
            form["opt_countries"] = ",".join(config.country_hints)
        if config.custom_blacklist:
            form["list"] = config.custom_blacklist

        data = await self._post(form, config.classifier_timeout_s)
        if isinstance(data, Unavailable):
            return data
        return parse_rule_response(data)


class MLClassifier(_TextModerationAdapter):
    """Per-class confidence scores from the configured models."""

    source = ML_BASED
    mode = "ml"

    async def classify(self, text: str, config: ModerationConfig) -> ClassifierResult:
        form = self._form(text, config)
        form["models"] = ",".join(config.ml_models)

        data = await self._post(form, config.classifier_timeout_s)
        if isinstance(data, Unavailable):
            return data
        if not isinstance(data.get("moderation_classes", {}), dict):
            logger.warning("%s classifier returned malformed moderation_classes", self.source)
            return Unavailable(self.source, "invalid_response")
        return parse_ml_response(data)


def _request_id(data: Dict[str, Any]) -> Optional[str]:
    req = data.get("request")
    if isinstance(req, dict) and req.get("id") is not None:
        return str(req["id"])
    return None


def parse_rule_response(data: Dict[str, Any]) -> List[Finding]:
    request_id = _request_id(data)
    findings: List[Finding] = []
    for category, body in data.items():
        if category in _ENVELOPE_KEYS or not isinstance(body, dict):
            continue
        for match in body.get("matches") or []:
            if not isinstance(match, dict):
                continue
            findings.append(
                Finding(
                    category=category,
                    source=RULE_BASED,
                    intensity=match.get("intensity"),
                    subtype=match.get("type"),
                    request_id=request_id,
                )
            )
    return findings


def parse_ml_response(data: Dict[str, Any]) -> List[Finding]:
    request_id = _request_id(data)
    classes = data.get("moderation_classes") or {}
    if not isinstance(classes, dict):
        return []
    findings: List[Finding] = []
    for name, value in classes.items():
        if name == "available" or isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        findings.append(
            Finding(
                category=name,
                source=ML_BASED,
                score=max(0.0, min(1.0, float(value))),
                request_id=request_id,
            )
        )
    return findings


def build_default_classifiers(settings=None) -> Dict[str, Optional[ClassifierAdapter]]:
    """Adapters wired from settings; absent when no credentials are configured."""
    settings = settings or get_settings()
    if not (settings.CLASSIFIER_API_USER and settings.CLASSIFIER_API_SECRET):
        logger.warning("Classifier credentials not configured; external classifiers disabled")
        return {"rule": None, "ml": None}
    kwargs = dict(
        api_url=settings.CLASSIFIER_API_URL,
        api_user=settings.CLASSIFIER_API_USER,
        api_secret=settings.CLASSIFIER_API_SECRET,
    )
    return {"rule": RuleBasedClassifier(**kwargs), "ml": MLClassifier(**kwargs)}
