import pytest

from backend.app.models.safety import RedactionSpan, Severity, ViolationAction, ViolationCategory
from backend.app.policies.taxonomy import (
    ScoreBands,
    advisory_violation,
    contact_violation,
    event_type_for,
    highest_severity,
    map_finding,
    severity_for_rule,
    severity_for_score,
)
from backend.tests.fakes import ml_finding, rule_finding


@pytest.mark.parametrize(
    "intensity,expected",
    [("high", Severity.CRITICAL), ("medium", Severity.HIGH), ("low", Severity.MEDIUM), (None, Severity.LOW)],
)
def test_profanity_graded_by_intensity(intensity, expected):
    assert severity_for_rule("profanity", intensity) == expected


def test_fixed_category_severities():
    assert severity_for_rule("violence", "low") == Severity.CRITICAL
    assert severity_for_rule("drug", None) == Severity.HIGH
    assert severity_for_rule("personal", None) == Severity.HIGH
    assert severity_for_rule("spam", "high") == Severity.MEDIUM


def test_unknown_category_maps_to_low():
    assert severity_for_rule("gibberish", "high") == Severity.LOW


def test_score_bands_are_monotonic():
    scores = [i / 100 for i in range(0, 101)]
    ranks = [severity_for_score(s).rank for s in scores]
    assert ranks == sorted(ranks)
    assert severity_for_score(0.95) == Severity.CRITICAL
    assert severity_for_score(0.85) == Severity.HIGH
    assert severity_for_score(0.75) == Severity.MEDIUM
    assert severity_for_score(0.5) == Severity.LOW


def test_custom_bands():
    bands = ScoreBands(critical=0.99, high=0.95, medium=0.5)
    assert severity_for_score(0.96, bands) == Severity.HIGH
    assert severity_for_score(0.6, bands) == Severity.MEDIUM


def test_rule_finding_mapping():
    v = map_finding(rule_finding("profanity", intensity="high", subtype="sexual"))
    assert v.type == "profanity_sexual"
    assert v.severity == Severity.CRITICAL
    assert v.action == ViolationAction.BLOCK
    assert v.category == ViolationCategory.RULE_BASED
    assert v.confidence == 1.0

    link = map_finding(rule_finding("link"))
    assert link.type == "external_link"
    assert link.action == ViolationAction.MODERATE


def test_ml_finding_mapping():
    v = map_finding(ml_finding("toxic", 0.95))
    assert v.type == "ml_toxic"
    assert v.severity == Severity.CRITICAL
    assert v.confidence == pytest.approx(0.95)
    assert v.category == ViolationCategory.ML_BASED


def test_contact_violation_blocks():
    v = contact_violation(RedactionSpan(start=0, end=5, type="phone"))
    assert v.type == "contact_phone"
    assert v.severity == Severity.HIGH
    assert v.is_blocking


def test_advisory_violation_is_low_and_not_blocking():
    v = advisory_violation("rule-based", "timeout")
    assert v.type == "moderation_api_error"
    assert v.severity == Severity.LOW
    assert v.advisory
    assert not v.is_blocking


def test_event_type_uses_priority():
    violations = [
        map_finding(rule_finding("spam")),
        contact_violation(RedactionSpan(start=0, end=5, type="email")),
    ]
    assert event_type_for(violations) == "CONTACT_EMAIL"
    assert highest_severity(violations) == Severity.HIGH
    assert event_type_for([map_finding(ml_finding("toxic", 0.8))]) == "ML_TOXIC"
