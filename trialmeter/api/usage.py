"""
Usage metering API.

- POST /api/usage/events: call-completed notification from the voice provider
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field, field_validator

from trialmeter.features.trial.service import record_call_completed
from trialmeter.models.usage import UsageEvent


router = APIRouter(prefix="/api/usage", tags=["usage"])


class UsageEventRequest(BaseModel):
    """Completed call as reported by the voice provider."""
    event_id: str = Field(min_length=1, max_length=255)
    tenant_id: str = Field(min_length=1, max_length=100)
    duration_seconds: int = Field(ge=0)
    has_prior_usage: bool = False
    occurred_at: Optional[datetime] = None

    @field_validator("event_id", "tenant_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class UsageEventResponse(BaseModel):
    outcome: str
    applied: bool
    period_id: Optional[int] = None
    calls_consumed: Optional[int] = None
    duration_consumed_seconds: Optional[int] = None
    exceeded: bool = False
    limiting_dimension: Optional[str] = None
    percent_used: Optional[float] = None
    blocked_now: bool = False


@router.post("/events", response_model=UsageEventResponse)
def post_usage_event(body: UsageEventRequest):
    """
    Meter one completed call.

    Duplicates (same tenant + event_id) return 200 with `applied: false`.

    Errors:
        404: Unknown tenant
        500: Usage frozen after an integrity failure
        503: Tenant busy (retry)
    """
    event = UsageEvent(**body.model_dump())
    result = record_call_completed(event)

    response = UsageEventResponse(outcome=result.outcome.value, applied=result.applied)
    if result.period is not None:
        response.period_id = result.period.period_id
        response.calls_consumed = result.period.calls_consumed
        response.duration_consumed_seconds = result.period.duration_consumed_seconds
    if result.decision is not None:
        response.exceeded = result.decision.exceeded
        response.limiting_dimension = result.decision.limiting_dimension.value
        response.percent_used = result.decision.percent_used
    response.blocked_now = bool(result.transition and result.transition.applied)
    return response
