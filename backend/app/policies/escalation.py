"""Sanction escalation policy.

Given the violations of one message and the user's recent safety events,
decide what happens to the user. Pure functions: the same history always
produces the same aggregate. Persistence and per-user serialization live in
``services.safety``.

Rules, first match wins:
  1. any Critical violation          -> suspend (24h)
  2. >= 2 High violations            -> suspend (4h)
  3. >= 3 High/Critical events in the window, this one included -> suspend (12h)
  4. a Medium violation and no prior events in the window -> educational warning
  5. otherwise                       -> record only

Score decay applies on top of whichever rule fires and is never restored
automatically. Banned is never applied here.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.safety import (
    SafetyEvent,
    SanctionApplied,
    SanctionType,
    Severity,
    UserSafetyAggregate,
    UserStatus,
    Violation,
    ViolationCategory,
)
from .taxonomy import highest_severity

MAX_SAFETY_SCORE = 100

_SEVERE = (Severity.HIGH, Severity.CRITICAL)


def _default_deductions() -> Dict[Severity, int]:
    return {
        Severity.CRITICAL: 50,
        Severity.HIGH: 25,
        Severity.MEDIUM: 10,
        Severity.LOW: 5,
    }


@dataclass(frozen=True)
class EscalationPolicy:
    deductions: Dict[Severity, int] = field(default_factory=_default_deductions)
    suspension_hours_critical: int = 24
    suspension_hours_multiple_high: int = 4
    suspension_hours_pattern: int = 12
    multiple_high_threshold: int = 2
    pattern_event_threshold: int = 3
    human_review_event_threshold: int = 5
    human_review_ml_violations: int = 3
    # A repeated-violation suspension also goes to a human
    review_pattern_suspensions: bool = True

    @classmethod
    def from_settings(cls, settings) -> "EscalationPolicy":
        return cls(
            deductions={
                Severity.CRITICAL: settings.SCORE_DEDUCTION_CRITICAL,
                Severity.HIGH: settings.SCORE_DEDUCTION_HIGH,
                Severity.MEDIUM: settings.SCORE_DEDUCTION_MEDIUM,
                Severity.LOW: settings.SCORE_DEDUCTION_LOW,
            },
            suspension_hours_critical=settings.SUSPENSION_HOURS_CRITICAL,
            suspension_hours_multiple_high=settings.SUSPENSION_HOURS_MULTIPLE_HIGH,
            suspension_hours_pattern=settings.SUSPENSION_HOURS_PATTERN,
            multiple_high_threshold=settings.MULTIPLE_HIGH_THRESHOLD,
            pattern_event_threshold=settings.PATTERN_EVENT_THRESHOLD,
            human_review_event_threshold=settings.HUMAN_REVIEW_EVENT_THRESHOLD,
            human_review_ml_violations=settings.HUMAN_REVIEW_ML_VIOLATIONS,
        )


@dataclass(frozen=True)
class EscalationDecision:
    rule: str  # critical | multiple_high | pattern | first_warning | record_only
    reason: str
    score_deduction: int
    requires_human_review: bool
    review_reasons: Tuple[str, ...] = ()
    suspend_for: Optional[timedelta] = None
    warn: bool = False


def score_deduction(violations: Sequence[Violation], policy: EscalationPolicy) -> int:
    """Total score decay for one message. Advisory violations cost nothing."""
    return sum(policy.deductions.get(v.severity, 0) for v in violations if not v.advisory)


def decide(
    violations: Sequence[Violation],
    recent_events: Sequence[SafetyEvent],
    policy: EscalationPolicy,
) -> EscalationDecision:
    """Pick the escalation tier for one message.

    Args:
        violations: Violations of the current verdict
        recent_events: The user's events inside the rolling window, excluding
            the one being recorded now
        policy: Thresholds and durations

    Returns:
        EscalationDecision: What to apply; nothing has been applied yet
    """
    counted = [v for v in violations if not v.advisory]
    prior = [e for e in recent_events if not e.advisory]

    critical = sum(1 for v in counted if v.severity == Severity.CRITICAL)
    high = sum(1 for v in counted if v.severity == Severity.HIGH)
    medium = any(v.severity == Severity.MEDIUM for v in counted)
    current_is_severe = any(v.severity in _SEVERE for v in counted)
    severe_in_window = sum(1 for e in prior if e.severity in _SEVERE) + (1 if current_is_severe else 0)

    suspend_for: Optional[timedelta] = None
    warn = False
    if critical:
        rule, reason = "critical", "Critical safety violation detected"
        suspend_for = timedelta(hours=policy.suspension_hours_critical)
    elif high >= policy.multiple_high_threshold:
        rule, reason = "multiple_high", "Multiple high-severity violations"
        suspend_for = timedelta(hours=policy.suspension_hours_multiple_high)
    elif severe_in_window >= policy.pattern_event_threshold:
        rule, reason = "pattern", "Pattern of repeated violations detected"
        suspend_for = timedelta(hours=policy.suspension_hours_pattern)
    elif medium and not prior:
        rule, reason = "first_warning", "First-time policy violation - educational warning issued"
        warn = True
    else:
        rule, reason = "record_only", "Violation recorded"

    review_reasons: List[str] = []
    if critical:
        review_reasons.append("critical_violation")
    if len(prior) >= policy.human_review_event_threshold:
        review_reasons.append("repeat_offender")
    ml_count = sum(1 for v in counted if v.category == ViolationCategory.ML_BASED)
    if ml_count >= policy.human_review_ml_violations:
        review_reasons.append("ml_pattern")
    if rule == "pattern" and policy.review_pattern_suspensions:
        review_reasons.append("violation_pattern")

    return EscalationDecision(
        rule=rule,
        reason=reason,
        score_deduction=score_deduction(counted, policy),
        requires_human_review=bool(review_reasons),
        review_reasons=tuple(review_reasons),
        suspend_for=suspend_for,
        warn=warn,
    )


def expire_suspension(aggregate: UserSafetyAggregate, now: datetime) -> UserSafetyAggregate:
    """Lazily lift a suspension whose end time has passed."""
    if not aggregate.suspension_expired(now):
        return aggregate
    return aggregate.model_copy(
        update={"status": UserStatus.ACTIVE, "suspended_until": None, "suspension_reason": None}
    )


def apply_decision(
    aggregate: UserSafetyAggregate,
    decision: EscalationDecision,
    now: datetime,
) -> Tuple[UserSafetyAggregate, Optional[SanctionApplied]]:
    """Return the updated aggregate and the sanction that actually took effect."""
    current = expire_suspension(aggregate, now)
    update: Dict[str, object] = {
        "safety_score": max(0, current.safety_score - decision.score_deduction),
    }
    sanction: Optional[SanctionApplied] = None

    if decision.warn:
        update["warning_count"] = current.warning_count + 1
        update["last_warning_at"] = now
        sanction = SanctionApplied(type=SanctionType.WARNING, reason=decision.reason)

    if decision.suspend_for is not None and current.status != UserStatus.BANNED:
        until = now + decision.suspend_for
        if (
            current.status == UserStatus.SUSPENDED
            and current.suspended_until is not None
            and current.suspended_until > until
        ):
            # Never shorten an existing suspension
            until = current.suspended_until
        update["status"] = UserStatus.SUSPENDED
        update["suspended_until"] = until
        update["suspension_reason"] = decision.reason
        sanction = SanctionApplied(
            type=SanctionType.TEMPORARY_RESTRICTION,
            reason=decision.reason,
            duration_minutes=int(decision.suspend_for.total_seconds() // 60),
            suspended_until=until,
        )

    return current.model_copy(update=update), sanction


def replay(
    aggregate: UserSafetyAggregate,
    history: Sequence[Tuple[datetime, Sequence[Violation]]],
    policy: EscalationPolicy,
    window: timedelta,
) -> UserSafetyAggregate:
    """Run an ordered message history through the policy from ``aggregate``.

    Used for audits and to rebuild an aggregate from the event log.
    """
    seen: List[SafetyEvent] = []
    current = aggregate
    for index, (at, violations) in enumerate(history):
        recent = [e for e in seen if e.occurred_at >= at - window]
        decision = decide(violations, recent, policy)
        current, _ = apply_decision(current, decision, at)
        counted = [v for v in violations if not v.advisory]
        seen.append(
            SafetyEvent(
                id=f"replay-{index}",
                user_id=aggregate.user_id,
                occurred_at=at,
                event_type="REPLAY",
                severity=highest_severity(counted or violations),
                violations=list(violations),
                advisory=not counted,
            )
        )
    return current
