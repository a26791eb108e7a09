"""
trialmeter/models/snapshot.py

Read models for the dashboard and the voice provider's pre-call gate.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from trialmeter.models.tenant import SubscriptionStatus
from trialmeter.models.usage import LimitingDimension


class BlockSnapshot(BaseModel):
    """
    Everything a trial banner needs to render.

    `percent_used` follows the limiting dimension and may exceed 100;
    `warning_level` is the highest configured warning threshold reached.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    status: SubscriptionStatus
    variant_key: str
    is_blocked: bool
    limiting_dimension: LimitingDimension
    calls_used: int
    calls_limit: int
    minutes_used: int
    minutes_limit: int
    percent_used: float
    days_remaining: int
    trial_period_end: datetime
    warning_level: Optional[int] = None
    block_reason: Optional[str] = None


class CallGateDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    allowed: bool
    status: SubscriptionStatus
    reason: Optional[str] = None
