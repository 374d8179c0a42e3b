"""Violation taxonomy: the one table mapping raw findings to severity and action.

Both the moderation pipeline and the escalation engine read severities from
here; nothing else re-derives them.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..models.safety import (
    Finding,
    RedactionSpan,
    Severity,
    Violation,
    ViolationAction,
    ViolationCategory,
)

# Rule-based intensity labels
RULE_INTENSITY_SEVERITY: Dict[str, Severity] = {
    "high": Severity.CRITICAL,
    "medium": Severity.HIGH,
    "low": Severity.MEDIUM,
}

# Categories whose severity ignores the reported intensity
CATEGORY_SEVERITY: Dict[str, Severity] = {
    "extremism": Severity.CRITICAL,
    "violence": Severity.CRITICAL,
    "self-harm": Severity.CRITICAL,
    "weapon": Severity.HIGH,
    "drug": Severity.HIGH,
    "content-trade": Severity.HIGH,
    "money-transaction": Severity.HIGH,
    "personal-info": Severity.HIGH,
    "spam": Severity.MEDIUM,
    "medical": Severity.MEDIUM,
    "link": Severity.MEDIUM,
}

# Categories graded by intensity
INTENSITY_CATEGORIES = frozenset({"profanity"})

CATEGORY_ALIASES: Dict[str, str] = {
    "personal": "personal-info",
    "self_harm": "self-harm",
    "selfharm": "self-harm",
    "content_trade": "content-trade",
    "money_transaction": "money-transaction",
}

ACTION_BY_SEVERITY: Dict[Severity, ViolationAction] = {
    Severity.CRITICAL: ViolationAction.BLOCK,
    Severity.HIGH: ViolationAction.BLOCK,
    Severity.MEDIUM: ViolationAction.MODERATE,
    Severity.LOW: ViolationAction.FLAG,
}

CONTACT_VIOLATION_TYPES: Dict[str, str] = {
    "email": "contact_email",
    "phone": "contact_phone",
    "social_handle": "contact_social",
    "link": "contact_link",
}

# Highest-priority type names the persisted event is labelled with
EVENT_TYPE_PRIORITY: List[str] = [
    "contact_email",
    "contact_phone",
    "contact_social",
    "contact_link",
    "profanity_sexual",
    "profanity_discriminatory",
    "extremism",
    "violence",
    "self-harm",
    "weapon",
    "drug",
    "content-trade",
    "spam",
    "external_link",
]

MODERATION_API_ERROR = "moderation_api_error"


@dataclass(frozen=True)
class ScoreBands:
    """Lower bounds of each ML severity band."""

    critical: float = 0.9
    high: float = 0.8
    medium: float = 0.7

    @classmethod
    def from_settings(cls, settings) -> "ScoreBands":
        return cls(
            critical=settings.ML_CRITICAL_SCORE,
            high=settings.ML_HIGH_SCORE,
            medium=settings.ML_MEDIUM_SCORE,
        )


DEFAULT_BANDS = ScoreBands()


def normalize_category(category: str) -> str:
    key = (category or "").strip().lower()
    return CATEGORY_ALIASES.get(key, key)


def severity_for_rule(category: str, intensity: Optional[str]) -> Severity:
    """Severity for a rule-based match. Unknown categories map to LOW."""
    cat = normalize_category(category)
    if cat in CATEGORY_SEVERITY:
        return CATEGORY_SEVERITY[cat]
    if cat in INTENSITY_CATEGORIES:
        return RULE_INTENSITY_SEVERITY.get((intensity or "").strip().lower(), Severity.LOW)
    return Severity.LOW


def severity_for_score(score: float, bands: ScoreBands = DEFAULT_BANDS) -> Severity:
    if score >= bands.critical:
        return Severity.CRITICAL
    if score >= bands.high:
        return Severity.HIGH
    if score >= bands.medium:
        return Severity.MEDIUM
    return Severity.LOW


def action_for(severity: Severity) -> ViolationAction:
    return ACTION_BY_SEVERITY[severity]


def _rule_type(category: str, subtype: Optional[str]) -> str:
    if category == "profanity":
        return f"profanity_{subtype}" if subtype else "profanity"
    if category == "personal-info":
        return f"personal_{subtype}" if subtype else "personal_info"
    if category == "link":
        return "external_link"
    return category or "unknown"


def map_finding(finding: Finding, bands: ScoreBands = DEFAULT_BANDS) -> Violation:
    """Normalize one raw finding into a Violation."""
    if finding.source == ViolationCategory.ML_BASED.value:
        score = max(0.0, min(1.0, float(finding.score or 0.0)))
        severity = severity_for_score(score, bands)
        return Violation(
            type=f"ml_{finding.category}",
            severity=severity,
            confidence=score,
            category=ViolationCategory.ML_BASED,
            action=action_for(severity),
            description=f"ML detected {finding.category} content (confidence: {score * 100:.1f}%)",
        )

    category = normalize_category(finding.category)
    severity = severity_for_rule(category, finding.intensity)
    if finding.intensity:
        description = f"{category} content detected ({finding.intensity})"
    else:
        description = f"{category} content detected"
    return Violation(
        type=_rule_type(category, finding.subtype),
        severity=severity,
        confidence=1.0,
        category=ViolationCategory.RULE_BASED,
        action=action_for(severity),
        description=description,
    )


def contact_violation(span: RedactionSpan) -> Violation:
    return Violation(
        type=CONTACT_VIOLATION_TYPES.get(span.type, f"contact_{span.type}"),
        severity=Severity.HIGH,
        confidence=1.0,
        category=ViolationCategory.CONTACT_DETECTION,
        action=ViolationAction.BLOCK,
        description=f"Contact information detected: {span.type}",
    )


def advisory_violation(source: str, reason: str) -> Violation:
    """Low-severity marker recording that a classifier could not be consulted."""
    return Violation(
        type=MODERATION_API_ERROR,
        severity=Severity.LOW,
        confidence=0.5,
        category=ViolationCategory.RULE_BASED,
        action=ViolationAction.FLAG,
        description=f"Content moderation API temporarily unavailable ({source}: {reason})",
        advisory=True,
    )


def highest_severity(violations: Iterable[Violation]) -> Severity:
    ranked = [v.severity for v in violations]
    if not ranked:
        return Severity.LOW
    return max(ranked, key=lambda s: s.rank)


def event_type_for(violations: List[Violation]) -> str:
    if not violations:
        return "UNKNOWN"
    present = {v.type for v in violations}
    for candidate in EVENT_TYPE_PRIORITY:
        if candidate in present:
            return candidate.upper()
    return violations[0].type.upper()
