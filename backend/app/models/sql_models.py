from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from ..db.base import Base
from .safety import utcnow


def generate_uuid():
    return str(uuid4())


class UserSafetyRecord(Base):
    """Per-user safety aggregate. Created with a full score, never deleted."""

    __tablename__ = "user_safety"

    user_id = Column(String(36), primary_key=True)
    safety_score = Column(Integer, nullable=False, default=100)
    warning_count = Column(Integer, nullable=False, default=0)
    last_warning_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    suspended_until = Column(DateTime, nullable=True)
    suspension_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow, nullable=True)

    def __repr__(self):
        return f"<UserSafetyRecord(user_id='{self.user_id}', status='{self.status}', score={self.safety_score})>"


class SafetyEventRecord(Base):
    """Append-only log of moderated messages that produced violations."""

    __tablename__ = "safety_events"
    __table_args__ = (
        Index("ix_safety_events_user_occurred", "user_id", "occurred_at"),
        Index("ix_safety_events_review", "requires_human_review", "human_reviewed_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    pair_id = Column(String(36), nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    event_type = Column(String(64), nullable=False)
    severity = Column(String(20), nullable=False)
    severity_rank = Column(Integer, nullable=False, default=1)
    violations = Column(JSON, nullable=False, default=list)
    requires_human_review = Column(Boolean, nullable=False, default=False)
    advisory = Column(Boolean, nullable=False, default=False)
    content = Column(Text, nullable=False, default="")
    processed_content = Column(Text, nullable=False, default="")
    score_deduction = Column(Integer, nullable=False, default=0)
    # Classifier confidence, request id and similar audit data
    details = Column("metadata", JSON, default=dict)
    human_reviewed_at = Column(DateTime, nullable=True)
    human_reviewed_by = Column(String(36), nullable=True)
    review_action = Column(String(32), nullable=True)
    review_notes = Column(Text, nullable=True)

    def __repr__(self):
        return f"<SafetyEventRecord(id='{self.id}', user_id='{self.user_id}', severity='{self.severity}')>"
