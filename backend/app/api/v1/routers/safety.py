from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ....core.exceptions import (
    ModerationInputError,
    SafetyEventAlreadyReviewed,
    SafetyEventNotFound,
    SafetyRecordError,
    SafetyStoreError,
    UserSanctionedError,
)
from ....models.safety import (
    ModerationOutcome,
    ReviewAction,
    SafetyEvent,
    SafetyStats,
    UserSafetyAggregate,
    Verdict,
)
from ....services.safety import SafetyService, get_safety_service

router = APIRouter(prefix="/safety", tags=["safety"])


# Models


class ModerateRequest(BaseModel):
    text: str
    config: Optional[Dict[str, Any]] = None


class MessageRequest(BaseModel):
    user_id: str
    pair_id: Optional[str] = None
    text: str
    config: Optional[Dict[str, Any]] = None


class ReviewRequest(BaseModel):
    action: ReviewAction
    reviewer_id: Optional[str] = None
    notes: Optional[str] = None
    suspension_hours: Optional[int] = Field(None, gt=0)


class ScoreAdjustmentRequest(BaseModel):
    delta: int
    reason: str


class UserSafetyResponse(BaseModel):
    user_id: str
    safety_score: int
    warning_count: int
    last_warning_at: Optional[datetime] = None
    status: str
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None

    @classmethod
    def from_aggregate(cls, agg: UserSafetyAggregate) -> "UserSafetyResponse":
        return cls(**{**agg.model_dump(), "status": agg.status.value})


def _bad_config(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid moderation config: {e}")


@router.post("/moderate", response_model=Verdict)
async def moderate(request: ModerateRequest, service: SafetyService = Depends(get_safety_service)):
    """Moderate text without recording anything."""
    try:
        return await service.moderate(request.text, request.config)
    except ModerationInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValueError as e:
        raise _bad_config(e)


@router.post("/messages", response_model=ModerationOutcome)
async def moderate_message(request: MessageRequest, service: SafetyService = Depends(get_safety_service)):
    """
    Moderate an outbound chat message and apply the sender's sanctions.

    A 503 means the verdict was computed but not recorded; ``blocked`` in the
    body tells the transport whether to deliver while it retries.
    """
    try:
        return await service.moderate_and_record(request.user_id, request.pair_id, request.text, request.config)
    except ModerationInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except UserSanctionedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": str(e),
                "status": e.status,
                "suspended_until": e.suspended_until.isoformat() if e.suspended_until else None,
                "reason": e.reason,
            },
        )
    except SafetyRecordError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "message": str(e),
                "blocked": e.blocked,
                "processed_text": e.verdict.processed_text,
            },
        )
    except SafetyStoreError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ValueError as e:
        raise _bad_config(e)


@router.get("/review", response_model=List[SafetyEvent])
async def review_queue(
    limit: int = Query(50, ge=1, le=500),
    service: SafetyService = Depends(get_safety_service),
):
    return service.get_review_queue(limit)


@router.post("/review/{event_id}", response_model=SafetyEvent)
async def review_event(
    event_id: str,
    request: ReviewRequest,
    service: SafetyService = Depends(get_safety_service),
):
    try:
        return await service.review_event(
            event_id,
            request.action,
            reviewer_id=request.reviewer_id,
            notes=request.notes,
            suspension_hours=request.suspension_hours,
        )
    except SafetyEventNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Safety event not found")
    except SafetyEventAlreadyReviewed:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Safety event already reviewed")


@router.get("/stats", response_model=SafetyStats)
async def safety_stats(
    timeframe: Literal["day", "week", "month"] = "day",
    service: SafetyService = Depends(get_safety_service),
):
    return service.get_safety_stats(timeframe)


@router.get("/users/{user_id}", response_model=UserSafetyResponse)
async def user_safety(user_id: str, service: SafetyService = Depends(get_safety_service)):
    return UserSafetyResponse.from_aggregate(service.get_user_safety(user_id))


@router.post("/users/{user_id}/score", response_model=UserSafetyResponse)
async def adjust_score(
    user_id: str,
    request: ScoreAdjustmentRequest,
    service: SafetyService = Depends(get_safety_service),
):
    updated = await service.adjust_score(user_id, request.delta, request.reason)
    return UserSafetyResponse.from_aggregate(updated)
