"""
trialmeter/models/usage.py

Usage metering models.

- UsageEvent: one completed call reported by the voice provider.
- UsagePeriod: the accounting window the events are applied to.
- BlockDecision: derived limit evaluation, never stored.
- ApplyResult: outcome of applying one event.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field

from trialmeter.core.timeutil import as_utc
from trialmeter.models.trial import TransitionResult


class PeriodStatus(str, Enum):
    OPEN = "open"
    ARCHIVED = "archived"


class LimitingDimension(str, Enum):
    CALLS = "calls"
    DURATION = "duration"
    NONE = "none"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NO_OPEN_PERIOD = "no_open_period"


class UsageEvent(BaseModel):
    """
    A call-completed notification.

    `event_id` is the external call identifier and the idempotency key.
    Calls with `has_prior_usage` set are metered like any other call.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1, max_length=255)
    tenant_id: str = Field(min_length=1, max_length=100)
    duration_seconds: int = Field(ge=0)
    has_prior_usage: bool = False
    occurred_at: Optional[datetime] = None


class UsagePeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    period_id: int
    tenant_id: str
    period_start: datetime
    period_end: datetime
    status: PeriodStatus
    calls_consumed: int = 0
    duration_consumed_seconds: int = 0
    archived_at: Optional[datetime] = None
    archive_reason: Optional[str] = None
    event_ids_pruned_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UsagePeriod":
        return cls(
            period_id=row["id"],
            tenant_id=row["tenant_id"],
            period_start=as_utc(row["period_start"]),
            period_end=as_utc(row["period_end"]),
            status=PeriodStatus(row["status"]),
            calls_consumed=row["calls_consumed"],
            duration_consumed_seconds=row["duration_consumed_seconds"],
            archived_at=as_utc(row["archived_at"]),
            archive_reason=row["archive_reason"],
            event_ids_pruned_at=as_utc(row["event_ids_pruned_at"]),
        )


class BlockDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    exceeded: bool
    limiting_dimension: LimitingDimension
    percent_used: float
    calls_used: int
    calls_limit: int
    minutes_used: int
    minutes_limit: int
    calls_exceeded: bool
    duration_exceeded: bool


class ApplyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: ApplyOutcome
    applied: bool
    period: Optional[UsagePeriod] = None
    decision: Optional[BlockDecision] = None
    transition: Optional[TransitionResult] = None

