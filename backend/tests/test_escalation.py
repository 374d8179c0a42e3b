from datetime import timedelta

from backend.app.models.safety import (
    SafetyEvent,
    SanctionType,
    Severity,
    UserSafetyAggregate,
    UserStatus,
    Violation,
    ViolationAction,
    ViolationCategory,
)
from backend.app.policies.escalation import (
    EscalationPolicy,
    apply_decision,
    decide,
    expire_suspension,
    replay,
)
from backend.app.policies.taxonomy import advisory_violation
from backend.tests.fakes import NOW

POLICY = EscalationPolicy()
WINDOW = timedelta(days=30)

_ACTIONS = {
    Severity.CRITICAL: ViolationAction.BLOCK,
    Severity.HIGH: ViolationAction.BLOCK,
    Severity.MEDIUM: ViolationAction.MODERATE,
    Severity.LOW: ViolationAction.FLAG,
}


def violation(severity, category=ViolationCategory.RULE_BASED, type_="drug"):
    return Violation(type=type_, severity=severity, category=category, action=_ACTIONS[severity])


def event(severity, days_ago=1, advisory=False):
    return SafetyEvent(
        id=f"evt-{severity.value}-{days_ago}",
        user_id="u1",
        occurred_at=NOW - timedelta(days=days_ago),
        event_type="DRUG",
        severity=severity,
        violations=[violation(severity)],
        advisory=advisory,
    )


def fresh():
    return UserSafetyAggregate(user_id="u1")


def test_first_medium_violation_warns():
    decision = decide([violation(Severity.MEDIUM)], [], POLICY)
    agg, sanction = apply_decision(fresh(), decision, NOW)

    assert decision.rule == "first_warning"
    assert agg.warning_count == 1
    assert agg.last_warning_at == NOW
    assert agg.status == UserStatus.ACTIVE
    assert agg.suspended_until is None
    assert agg.safety_score == 90
    assert sanction.type == SanctionType.WARNING


def test_medium_with_prior_events_records_only():
    decision = decide([violation(Severity.MEDIUM)], [event(Severity.LOW)], POLICY)
    agg, sanction = apply_decision(fresh(), decision, NOW)
    assert decision.rule == "record_only"
    assert agg.warning_count == 0
    assert sanction is None


def test_third_high_event_in_window_suspends_for_pattern():
    prior = [event(Severity.HIGH, 3), event(Severity.HIGH, 10)]
    decision = decide([violation(Severity.HIGH)], prior, POLICY)
    agg, sanction = apply_decision(fresh(), decision, NOW)

    assert decision.rule == "pattern"
    assert agg.status == UserStatus.SUSPENDED
    assert agg.suspended_until == NOW + timedelta(hours=12)
    assert decision.requires_human_review
    assert sanction.type == SanctionType.TEMPORARY_RESTRICTION
    assert sanction.duration_minutes == 12 * 60


def test_events_outside_window_are_callers_concern():
    # The store filters by window; decide() trusts what it is given
    decision = decide([violation(Severity.HIGH)], [event(Severity.HIGH, 3)], POLICY)
    assert decision.rule == "record_only"
    assert decision.suspend_for is None


def test_critical_ml_violation_suspends_immediately():
    decision = decide([violation(Severity.CRITICAL, ViolationCategory.ML_BASED, "ml_violence")], [], POLICY)
    agg, _ = apply_decision(fresh(), decision, NOW)

    assert decision.rule == "critical"
    assert agg.status == UserStatus.SUSPENDED
    assert agg.suspended_until == NOW + timedelta(hours=24)
    assert decision.requires_human_review
    assert "critical_violation" in decision.review_reasons
    assert agg.safety_score == 50


def test_two_high_violations_in_one_message_suspend_briefly():
    decision = decide([violation(Severity.HIGH), violation(Severity.HIGH)], [], POLICY)
    agg, _ = apply_decision(fresh(), decision, NOW)
    assert decision.rule == "multiple_high"
    assert agg.suspended_until == NOW + timedelta(hours=4)
    assert agg.safety_score == 50


def test_score_never_negative():
    agg = fresh().model_copy(update={"safety_score": 20})
    decision = decide([violation(Severity.CRITICAL)], [], POLICY)
    updated, _ = apply_decision(agg, decision, NOW)
    assert updated.safety_score == 0


def test_advisory_violations_cost_nothing_and_do_not_count():
    decision = decide([advisory_violation("rule-based", "timeout")], [], POLICY)
    agg, sanction = apply_decision(fresh(), decision, NOW)
    assert decision.score_deduction == 0
    assert agg == fresh()
    assert sanction is None

    # Advisory history does not block a first warning
    decision = decide([violation(Severity.MEDIUM)], [event(Severity.LOW, advisory=True)], POLICY)
    assert decision.rule == "first_warning"


def test_repeat_offender_needs_review():
    prior = [event(Severity.LOW, d) for d in range(1, 6)]
    decision = decide([violation(Severity.LOW)], prior, POLICY)
    assert "repeat_offender" in decision.review_reasons


def test_many_ml_violations_need_review():
    ml = [violation(Severity.MEDIUM, ViolationCategory.ML_BASED, f"ml_{i}") for i in range(3)]
    decision = decide(ml, [event(Severity.LOW)], POLICY)
    assert decision.review_reasons == ("ml_pattern",)


def test_suspension_never_shortened():
    long_until = NOW + timedelta(hours=48)
    agg = fresh().model_copy(update={"status": UserStatus.SUSPENDED, "suspended_until": long_until})
    decision = decide([violation(Severity.HIGH), violation(Severity.HIGH)], [], POLICY)
    updated, sanction = apply_decision(agg, decision, NOW)
    assert updated.suspended_until == long_until
    assert sanction.suspended_until == long_until


def test_banned_user_stays_banned():
    agg = fresh().model_copy(update={"status": UserStatus.BANNED})
    decision = decide([violation(Severity.CRITICAL)], [], POLICY)
    updated, sanction = apply_decision(agg, decision, NOW)
    assert updated.status == UserStatus.BANNED
    assert updated.suspended_until is None
    assert sanction is None


def test_expired_suspension_lifted_lazily():
    agg = fresh().model_copy(
        update={"status": UserStatus.SUSPENDED, "suspended_until": NOW - timedelta(minutes=1), "suspension_reason": "x"}
    )
    lifted = expire_suspension(agg, NOW)
    assert lifted.status == UserStatus.ACTIVE
    assert lifted.suspended_until is None
    assert lifted.suspension_reason is None

    active = fresh()
    assert expire_suspension(active, NOW) is active


def test_replay_is_deterministic():
    history = [
        (NOW - timedelta(days=5), [violation(Severity.MEDIUM)]),
        (NOW - timedelta(days=4), [violation(Severity.HIGH)]),
        (NOW - timedelta(days=3), [violation(Severity.HIGH)]),
        (NOW - timedelta(days=2), [violation(Severity.HIGH)]),
    ]
    first = replay(fresh(), history, POLICY, WINDOW)
    second = replay(fresh(), history, POLICY, WINDOW)

    assert first == second
    assert first.warning_count == 1
    assert first.status == UserStatus.SUSPENDED
    assert first.suspended_until == NOW - timedelta(days=2) + timedelta(hours=12)
    assert first.safety_score == 100 - 10 - 25 * 3
