from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Severity(str, Enum):
    """Violation severity, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ViolationCategory(str, Enum):
    RULE_BASED = "rule-based"
    ML_BASED = "ml-based"
    CONTACT_DETECTION = "contact-detection"


class ViolationAction(str, Enum):
    BLOCK = "block"
    FLAG = "flag"
    MODERATE = "moderate"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class ReviewAction(str, Enum):
    """Decisions a human moderator can record against a safety event."""

    DISMISS = "dismiss"
    UPHOLD = "uphold"
    ESCALATE = "escalate"
    APPLY_SANCTION = "apply_sanction"
    BAN = "ban"


class SanctionType(str, Enum):
    WARNING = "warning"
    TEMPORARY_RESTRICTION = "temporary_restriction"


# Ephemeral values produced per call; never persisted directly.


@dataclass(frozen=True)
class RedactionSpan:
    start: int
    end: int
    type: str  # "email" | "phone" | "social_handle" | "link"


@dataclass(frozen=True)
class Finding:
    """Raw classifier output before taxonomy mapping."""

    category: str
    source: str  # "rule-based" | "ml-based"
    intensity: Optional[str] = None
    score: Optional[float] = None
    subtype: Optional[str] = None
    request_id: Optional[str] = None


class Violation(BaseModel):
    type: str
    severity: Severity
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    category: ViolationCategory
    action: ViolationAction
    description: str = ""
    # Advisory violations (classifier outages) are audited but never sanctioned
    advisory: bool = False

    @property
    def is_blocking(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL) or self.action == ViolationAction.BLOCK


class VerdictMetadata(BaseModel):
    classifiers_used: bool = False
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Verdict(BaseModel):
    safe: bool
    violations: List[Violation] = Field(default_factory=list)
    processed_text: str
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    redactions: List[RedactionSpan] = Field(default_factory=list)
    metadata: VerdictMetadata = Field(default_factory=VerdictMetadata)

    @model_validator(mode="after")
    def _check_safe_matches_violations(self) -> "Verdict":
        if self.safe == any(v.is_blocking for v in self.violations):
            raise ValueError("safe must be False exactly when a High/Critical or blocking violation is present")
        return self

    @property
    def highest_severity(self) -> Optional[Severity]:
        if not self.violations:
            return None
        return max((v.severity for v in self.violations), key=lambda s: s.rank)

    @property
    def sanctionable(self) -> List[Violation]:
        return [v for v in self.violations if not v.advisory]


class SafetyEvent(BaseModel):
    id: str
    user_id: str
    pair_id: Optional[str] = None
    occurred_at: datetime
    event_type: str
    severity: Severity
    violations: List[Violation] = Field(default_factory=list)
    requires_human_review: bool = False
    advisory: bool = False
    content: str = ""
    processed_content: str = ""
    score_deduction: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)
    human_reviewed_at: Optional[datetime] = None
    human_reviewed_by: Optional[str] = None
    review_action: Optional[ReviewAction] = None
    review_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserSafetyAggregate(BaseModel):
    user_id: str
    safety_score: int = Field(100, ge=0, le=100)
    warning_count: int = 0
    last_warning_at: Optional[datetime] = None
    status: UserStatus = UserStatus.ACTIVE
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def suspension_expired(self, now: datetime) -> bool:
        return (
            self.status == UserStatus.SUSPENDED
            and self.suspended_until is not None
            and self.suspended_until <= now
        )


class SanctionApplied(BaseModel):
    type: SanctionType
    reason: str
    duration_minutes: Optional[int] = None
    suspended_until: Optional[datetime] = None
    auto_applied: bool = True


class ModerationOutcome(BaseModel):
    """What the chat transport receives for one outbound message."""

    processed_text: str
    blocked: bool
    quarantined: bool = False
    violations: List[Violation] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    confidence: float = 1.0
    sanction_applied: Optional[SanctionApplied] = None
    requires_human_review: bool = False
    event_id: Optional[str] = None


class SafetyStats(BaseModel):
    timeframe: str
    total_events: int
    critical_events: int
    human_review_events: int
    active_suspensions: int
    critical_rate: float
    human_review_rate: float
