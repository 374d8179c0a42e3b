"""Error kinds raised by the safety pipeline.

Classifier outages are not errors here: adapters return an ``Unavailable``
value and the pipeline degrades. Everything below is surfaced to the caller.
"""
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..models.safety import Verdict


class SafetyError(Exception):
    """Base class for safety pipeline errors."""


class ModerationInputError(SafetyError):
    """Text was rejected before any collaborator was invoked."""


class UserSanctionedError(SafetyError):
    """The sender is suspended or banned and may not post."""

    def __init__(self, user_id: str, status: str, suspended_until=None, reason: Optional[str] = None):
        self.user_id = user_id
        self.status = status
        self.suspended_until = suspended_until
        self.reason = reason
        super().__init__(f"user {user_id} is {status}")


class SafetyStoreError(SafetyError):
    """A read or write against the safety history store failed."""


class SafetyRecordError(SafetyError):
    """The verdict was computed but the safety bookkeeping could not be persisted.

    ``blocked`` is the fallback decision the caller should apply while retrying:
    fail-closed for unsafe verdicts, fail-open otherwise.
    """

    def __init__(self, message: str, verdict: "Verdict", blocked: bool):
        self.verdict = verdict
        self.blocked = blocked
        super().__init__(message)


class SafetyEventNotFound(SafetyError):
    pass


class SafetyEventAlreadyReviewed(SafetyError):
    pass
