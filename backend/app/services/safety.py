import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ..config import ModerationConfig, get_settings
from ..core.exceptions import SafetyRecordError, SafetyStoreError, UserSanctionedError
from ..models.safety import (
    ModerationOutcome,
    ReviewAction,
    SafetyEvent,
    SafetyStats,
    SanctionApplied,
    Severity,
    UserSafetyAggregate,
    UserStatus,
    Verdict,
    ViolationAction,
    utcnow,
)
from ..orchestration.classify import build_default_classifiers
from ..orchestration.pipeline import ModerationPipeline, validate_text
from ..policies.escalation import (
    MAX_SAFETY_SCORE,
    EscalationDecision,
    EscalationPolicy,
    apply_decision,
    decide,
)
from ..policies.taxonomy import ScoreBands, event_type_for, highest_severity
from .history_store import SafetyHistoryStore

logger = logging.getLogger(__name__)

STATS_TIMEFRAMES: Dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


class UserLockRegistry:
    """One asyncio.Lock per user id, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] <= 0:
                self._holders.pop(user_id, None)
                self._locks.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._locks)


def fallback_blocked(verdict: Verdict) -> bool:
    """Fail closed for unsafe verdicts, open for everything else."""
    return not verdict.safe


def build_outcome(
    verdict: Verdict,
    event: Optional[SafetyEvent] = None,
    sanction: Optional[SanctionApplied] = None,
) -> ModerationOutcome:
    blocked = not verdict.safe
    reasons: List[str] = []
    for v in verdict.sanctionable:
        if v.type not in reasons:
            reasons.append(v.type)
    return ModerationOutcome(
        processed_text=verdict.processed_text,
        blocked=blocked,
        quarantined=(not blocked) and any(v.action == ViolationAction.MODERATE for v in verdict.violations),
        violations=verdict.violations,
        reasons=reasons,
        confidence=verdict.confidence,
        sanction_applied=sanction,
        requires_human_review=bool(event and event.requires_human_review),
        event_id=event.id if event else None,
    )


async def _detached(task: "asyncio.Future[ModerationOutcome]", user_id: str) -> ModerationOutcome:
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        # Nobody awaits the task any more; surface its failure in the log
        task.add_done_callback(lambda t: _log_orphaned_failure(t, user_id))
        raise


def _log_orphaned_failure(task: "asyncio.Future[ModerationOutcome]", user_id: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Safety bookkeeping for user %s failed after the caller went away: %s",
            user_id,
            exc,
            exc_info=exc,
        )


class SafetyService:
    """Moderates outbound chat messages and keeps per-user sanction bookkeeping."""

    def __init__(
        self,
        store: SafetyHistoryStore,
        pipeline: ModerationPipeline,
        config: ModerationConfig,
        policy: Optional[EscalationPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        review_suspension_hours: int = 24,
    ):
        self.store = store
        self.pipeline = pipeline
        self.config = config
        self.policy = policy or EscalationPolicy()
        self.clock = clock
        self.review_suspension_hours = review_suspension_hours
        self._locks = UserLockRegistry()

    # -- moderation ----------------------------------------------------------

    async def moderate(self, text: str, overrides: Optional[Dict[str, Any]] = None) -> Verdict:
        """Verdict only; nothing is recorded."""
        return await self.pipeline.moderate(text, self.config.merged(overrides))

    async def moderate_and_record(
        self,
        user_id: str,
        pair_id: Optional[str],
        text: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ModerationOutcome:
        """Moderate one outbound message and apply any sanction.

        Args:
            user_id: Sender
            pair_id: Conversation pair the message belongs to
            text: Raw message text
            overrides: Per-call moderation config overrides

        Returns:
            ModerationOutcome: Processed text, block decision, violations and sanction

        Raises:
            ModerationInputError: Empty or oversized text
            UserSanctionedError: Sender is currently suspended or banned
            SafetyRecordError: Verdict computed but bookkeeping could not be persisted
        """
        config = self.config.merged(overrides)
        validate_text(text, config)

        standing = self.store.get_aggregate(user_id, now=self.clock())
        if standing.status != UserStatus.ACTIVE:
            raise UserSanctionedError(
                user_id,
                standing.status.value,
                suspended_until=standing.suspended_until,
                reason=standing.suspension_reason,
            )

        # A dropped client must not cancel the decision or its bookkeeping
        task = asyncio.ensure_future(self._moderate_and_record(user_id, pair_id, text, config))
        return await _detached(task, user_id)

    async def _moderate_and_record(
        self, user_id: str, pair_id: Optional[str], text: str, config: ModerationConfig
    ) -> ModerationOutcome:
        verdict = await self.pipeline.moderate(text, config)
        if not verdict.violations:
            return build_outcome(verdict)
        return await self._record(user_id, pair_id, text, verdict, config)

    async def record_verdict(
        self,
        user_id: str,
        pair_id: Optional[str],
        text: str,
        verdict: Verdict,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ModerationOutcome:
        """Record an already computed verdict; used to retry failed bookkeeping."""
        if not verdict.violations:
            return build_outcome(verdict)
        task = asyncio.ensure_future(
            self._record(user_id, pair_id, text, verdict, self.config.merged(overrides))
        )
        return await _detached(task, user_id)

    async def _record(
        self,
        user_id: str,
        pair_id: Optional[str],
        text: str,
        verdict: Verdict,
        config: ModerationConfig,
    ) -> ModerationOutcome:
        async with self._locks.hold(user_id):
            try:
                event, sanction, decision = self._record_sync(user_id, pair_id, text, verdict, config)
            except SafetyStoreError as e:
                blocked = fallback_blocked(verdict)
                logger.warning(
                    "Safety bookkeeping for user %s failed; fallback blocked=%s", user_id, blocked
                )
                raise SafetyRecordError(
                    f"Failed to record safety event for user {user_id}", verdict=verdict, blocked=blocked
                ) from e

        if sanction is not None:
            logger.info("Sanction applied to user %s: %s (%s)", user_id, sanction.type.value, decision.reason)
        if event.requires_human_review:
            logger.info(
                "Event %s for user %s escalated to human review: %s",
                event.id, user_id, ",".join(decision.review_reasons),
            )
        return build_outcome(verdict, event=event, sanction=sanction)

    def _record_sync(
        self,
        user_id: str,
        pair_id: Optional[str],
        text: str,
        verdict: Verdict,
        config: ModerationConfig,
    ) -> Tuple[SafetyEvent, Optional[SanctionApplied], EscalationDecision]:
        now = self.clock()
        window = timedelta(days=config.rolling_window_days)
        counted = verdict.sanctionable
        labelled = counted or verdict.violations

        # Read, decide and write in one transaction
        with self.store.atomic() as uow:
            before = uow.get_aggregate(user_id, now=now, lock=True)
            recent = uow.get_recent_events(user_id, window, now)
            decision = decide(verdict.violations, recent, self.policy)
            after, sanction = apply_decision(before, decision, now)
            event = uow.record_event(
                SafetyEvent(
                    id=str(uuid4()),
                    user_id=user_id,
                    pair_id=pair_id,
                    occurred_at=now,
                    event_type=event_type_for(labelled),
                    severity=highest_severity(labelled),
                    violations=verdict.violations,
                    requires_human_review=decision.requires_human_review,
                    advisory=not counted,
                    content=text,
                    processed_content=verdict.processed_text,
                    score_deduction=before.safety_score - after.safety_score,
                    details={
                        "confidence": verdict.confidence,
                        "classifiers_used": verdict.metadata.classifiers_used,
                        "request_id": verdict.metadata.request_id,
                        "rule": decision.rule,
                        "review_reasons": list(decision.review_reasons),
                    },
                )
            )
            uow.save_aggregate(after)
        return event, sanction, decision

    # -- user standing ---------------------------------------------------------

    def get_user_safety(self, user_id: str) -> UserSafetyAggregate:
        return self.store.get_aggregate(user_id, now=self.clock())

    async def adjust_score(self, user_id: str, delta: int, reason: str) -> UserSafetyAggregate:
        """Explicit score adjustment by a moderator, clamped to 0..100."""
        def _adjust(agg: UserSafetyAggregate) -> UserSafetyAggregate:
            score = max(0, min(MAX_SAFETY_SCORE, agg.safety_score + delta))
            return agg.model_copy(update={"safety_score": score})

        async with self._locks.hold(user_id):
            updated = self.store.update_aggregate(user_id, _adjust, now=self.clock())
        logger.info("Safety score for user %s adjusted by %+d (%s) -> %s", user_id, delta, reason, updated.safety_score)
        return updated

    # -- human review ----------------------------------------------------------

    def get_review_queue(self, limit: int = 50) -> List[SafetyEvent]:
        return self.store.get_events_for_human_review(limit)

    async def review_event(
        self,
        event_id: str,
        action: ReviewAction,
        reviewer_id: Optional[str] = None,
        notes: Optional[str] = None,
        suspension_hours: Optional[int] = None,
    ) -> SafetyEvent:
        """Record a moderator decision and apply its consequence to the user.

        ``dismiss`` refunds the score the event cost, ``apply_sanction``
        suspends, ``ban`` bans. The other actions only record the decision.
        """
        user_id = self.store.get_event(event_id).user_id
        now = self.clock()

        async with self._locks.hold(user_id):
            with self.store.atomic() as uow:
                event = uow.mark_reviewed(event_id, action, reviewer_id, notes, now=now)
                if action == ReviewAction.DISMISS and event.score_deduction:
                    refund = event.score_deduction
                    uow.update_aggregate(
                        user_id,
                        lambda a: a.model_copy(
                            update={"safety_score": min(MAX_SAFETY_SCORE, a.safety_score + refund)}
                        ),
                        now=now,
                    )
                elif action == ReviewAction.APPLY_SANCTION:
                    hours = suspension_hours or self.review_suspension_hours
                    uow.update_aggregate(user_id, lambda a: _suspend(a, now, hours, notes), now=now)
                elif action == ReviewAction.BAN:
                    uow.update_aggregate(
                        user_id,
                        lambda a: a.model_copy(
                            update={
                                "status": UserStatus.BANNED,
                                "suspended_until": None,
                                "suspension_reason": notes or "Banned by moderator",
                            }
                        ),
                        now=now,
                    )

        logger.info("Event %s reviewed by %s: %s", event_id, reviewer_id, ReviewAction(action).value)
        return event

    # -- monitoring ------------------------------------------------------------

    def get_safety_stats(self, timeframe: str = "day") -> SafetyStats:
        if timeframe not in STATS_TIMEFRAMES:
            raise ValueError(f"unknown timeframe: {timeframe}")
        now = self.clock()
        since = now - STATS_TIMEFRAMES[timeframe]
        total = self.store.count_events(since)
        critical = self.store.count_events(since, severity=Severity.CRITICAL)
        review = self.store.count_events(since, requires_human_review=True)
        return SafetyStats(
            timeframe=timeframe,
            total_events=total,
            critical_events=critical,
            human_review_events=review,
            active_suspensions=self.store.count_active_suspensions(now),
            critical_rate=(critical / total) * 100 if total else 0.0,
            human_review_rate=(review / total) * 100 if total else 0.0,
        )


def _suspend(agg: UserSafetyAggregate, now: datetime, hours: int, reason: Optional[str]) -> UserSafetyAggregate:
    if agg.status == UserStatus.BANNED:
        return agg
    until = now + timedelta(hours=hours)
    if agg.suspended_until is not None and agg.suspended_until > until:
        until = agg.suspended_until
    return agg.model_copy(
        update={
            "status": UserStatus.SUSPENDED,
            "suspended_until": until,
            "suspension_reason": reason or "Suspended by moderator",
        }
    )


@lru_cache()
def get_safety_service() -> SafetyService:
    """Dependency for getting the safety service."""
    settings = get_settings()
    classifiers = build_default_classifiers(settings)
    pipeline = ModerationPipeline(
        rule_classifier=classifiers["rule"],
        ml_classifier=classifiers["ml"],
        bands=ScoreBands.from_settings(settings),
    )
    return SafetyService(
        store=SafetyHistoryStore(),
        pipeline=pipeline,
        config=ModerationConfig.from_settings(settings),
        policy=EscalationPolicy.from_settings(settings),
        review_suspension_hours=settings.REVIEW_SUSPENSION_HOURS,
    )
