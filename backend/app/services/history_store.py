import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    SafetyEventAlreadyReviewed,
    SafetyEventNotFound,
    SafetyStoreError,
)
from ..db.base import SessionLocal
from ..models.safety import (
    ReviewAction,
    SafetyEvent,
    Severity,
    UserSafetyAggregate,
    UserStatus,
    utcnow,
)
from ..models.sql_models import SafetyEventRecord, UserSafetyRecord
from ..policies.escalation import expire_suspension

logger = logging.getLogger(__name__)

AggregateMutation = Callable[[UserSafetyAggregate], UserSafetyAggregate]


def _to_event(row: SafetyEventRecord) -> SafetyEvent:
    return SafetyEvent.model_validate(row)


def _to_aggregate(row: UserSafetyRecord) -> UserSafetyAggregate:
    return UserSafetyAggregate.model_validate(row)


class UnitOfWork:
    """Store operations bound to one session; committed together or not at all."""

    def __init__(self, db: Session):
        self.db = db

    def _aggregate_row(self, user_id: str, lock: bool = False) -> UserSafetyRecord:
        query = self.db.query(UserSafetyRecord).filter(UserSafetyRecord.user_id == user_id)
        if lock:
            query = query.with_for_update()
        row = query.first()
        if row is None:
            row = UserSafetyRecord(
                user_id=user_id,
                safety_score=100,
                warning_count=0,
                status=UserStatus.ACTIVE.value,
            )
            self.db.add(row)
            self.db.flush()
        return row

    def get_aggregate(self, user_id: str, now: Optional[datetime] = None, lock: bool = False) -> UserSafetyAggregate:
        row = self._aggregate_row(user_id, lock=lock)
        current = _to_aggregate(row)
        refreshed = expire_suspension(current, now or utcnow())
        if refreshed is not current:
            logger.info("Suspension for user %s expired; status restored to active", user_id)
            self.save_aggregate(refreshed)
        return refreshed

    def save_aggregate(self, aggregate: UserSafetyAggregate) -> UserSafetyAggregate:
        row = self._aggregate_row(aggregate.user_id)
        row.safety_score = aggregate.safety_score
        row.warning_count = aggregate.warning_count
        row.last_warning_at = aggregate.last_warning_at
        row.status = UserStatus(aggregate.status).value
        row.suspended_until = aggregate.suspended_until
        row.suspension_reason = aggregate.suspension_reason
        self.db.flush()
        return _to_aggregate(row)

    def update_aggregate(
        self, user_id: str, mutation: AggregateMutation, now: Optional[datetime] = None
    ) -> UserSafetyAggregate:
        current = self.get_aggregate(user_id, now=now, lock=True)
        return self.save_aggregate(mutation(current))

    def record_event(self, event: SafetyEvent) -> SafetyEvent:
        row = SafetyEventRecord(
            id=event.id,
            user_id=event.user_id,
            pair_id=event.pair_id,
            occurred_at=event.occurred_at,
            event_type=event.event_type,
            severity=Severity(event.severity).value,
            severity_rank=Severity(event.severity).rank,
            violations=[v.model_dump(mode="json") for v in event.violations],
            requires_human_review=event.requires_human_review,
            advisory=event.advisory,
            content=event.content,
            processed_content=event.processed_content,
            score_deduction=event.score_deduction,
            details=dict(event.details),
        )
        self.db.add(row)
        self.db.flush()
        return _to_event(row)

    def get_recent_events(self, user_id: str, window: timedelta, now: Optional[datetime] = None) -> List[SafetyEvent]:
        since = (now or utcnow()) - window
        rows = (
            self.db.query(SafetyEventRecord)
            .filter(SafetyEventRecord.user_id == user_id, SafetyEventRecord.occurred_at >= since)
            .order_by(SafetyEventRecord.occurred_at.desc())
            .all()
        )
        return [_to_event(r) for r in rows]

    def get_event(self, event_id: str) -> SafetyEvent:
        row = self.db.query(SafetyEventRecord).filter(SafetyEventRecord.id == event_id).first()
        if row is None:
            raise SafetyEventNotFound(event_id)
        return _to_event(row)

    def mark_reviewed(
        self,
        event_id: str,
        action: ReviewAction,
        reviewer_id: Optional[str],
        notes: Optional[str],
        now: Optional[datetime] = None,
    ) -> SafetyEvent:
        row = (
            self.db.query(SafetyEventRecord)
            .filter(SafetyEventRecord.id == event_id)
            .with_for_update()
            .first()
        )
        if row is None:
            raise SafetyEventNotFound(event_id)
        if row.human_reviewed_at is not None:
            raise SafetyEventAlreadyReviewed(event_id)
        row.human_reviewed_at = now or utcnow()
        row.human_reviewed_by = reviewer_id
        row.review_action = ReviewAction(action).value
        row.review_notes = notes
        self.db.flush()
        return _to_event(row)


class SafetyHistoryStore:
    """Per-user safety event log plus the mutable aggregate record.

    Every public method runs in its own transaction. Callers that need several
    operations to succeed or fail together use ``atomic()``.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def atomic(self) -> Iterator[UnitOfWork]:
        db = self._session_factory()
        try:
            yield UnitOfWork(db)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Safety store transaction failed: %s", e, exc_info=True)
            raise SafetyStoreError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_event(self, event: SafetyEvent) -> SafetyEvent:
        with self.atomic() as uow:
            return uow.record_event(event)

    def get_recent_events(
        self, user_id: str, window: timedelta = timedelta(days=30), now: Optional[datetime] = None
    ) -> List[SafetyEvent]:
        with self.atomic() as uow:
            return uow.get_recent_events(user_id, window, now)

    def get_aggregate(self, user_id: str, now: Optional[datetime] = None) -> UserSafetyAggregate:
        with self.atomic() as uow:
            return uow.get_aggregate(user_id, now=now)

    def update_aggregate(
        self, user_id: str, mutation: AggregateMutation, now: Optional[datetime] = None
    ) -> UserSafetyAggregate:
        with self.atomic() as uow:
            return uow.update_aggregate(user_id, mutation, now=now)

    def register_user(self, user_id: str) -> UserSafetyAggregate:
        """Create the aggregate with a full safety score (idempotent)."""
        return self.get_aggregate(user_id)

    def get_event(self, event_id: str) -> SafetyEvent:
        with self.atomic() as uow:
            return uow.get_event(event_id)

    def get_events_for_human_review(self, limit: int = 50) -> List[SafetyEvent]:
        """Unreviewed events flagged for a human, most severe and most recent first."""
        with self.atomic() as uow:
            rows = (
                uow.db.query(SafetyEventRecord)
                .filter(
                    SafetyEventRecord.requires_human_review.is_(True),
                    SafetyEventRecord.human_reviewed_at.is_(None),
                )
                .order_by(SafetyEventRecord.severity_rank.desc(), SafetyEventRecord.occurred_at.desc())
                .limit(limit)
                .all()
            )
            return [_to_event(r) for r in rows]

    def count_events(
        self,
        since: datetime,
        severity: Optional[Severity] = None,
        requires_human_review: Optional[bool] = None,
    ) -> int:
        with self.atomic() as uow:
            query = uow.db.query(func.count(SafetyEventRecord.id)).filter(SafetyEventRecord.occurred_at >= since)
            if severity is not None:
                query = query.filter(SafetyEventRecord.severity == Severity(severity).value)
            if requires_human_review is not None:
                query = query.filter(SafetyEventRecord.requires_human_review.is_(requires_human_review))
            return int(query.scalar() or 0)

    def count_active_suspensions(self, now: Optional[datetime] = None) -> int:
        with self.atomic() as uow:
            query = uow.db.query(func.count(UserSafetyRecord.user_id)).filter(
                UserSafetyRecord.status == UserStatus.SUSPENDED.value,
                UserSafetyRecord.suspended_until > (now or utcnow()),
            )
            return int(query.scalar() or 0)
