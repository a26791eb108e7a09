"""
trialmeter/models/trial.py

Trial lifecycle results: status transitions and conversions.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from trialmeter.models.tenant import SubscriptionStatus


class Trigger(str, Enum):
    LIMIT_EXCEEDED = "limit_exceeded"
    TRIAL_EXPIRED = "trial_expired"
    CONVERT_NOW = "convert_now"
    AUTO_CONVERT = "auto_convert"
    CANCEL = "cancel"
    BILLING_CANCELED = "billing_canceled"


class TransitionResult(BaseModel):
    """
    Outcome of a requested status change.

    `applied` is False both for idempotent no-ops (`noop=True`) and for
    illegal moves (`conflict=True`).
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    trigger: Trigger
    applied: bool
    noop: bool = False
    conflict: bool = False
    reason: Optional[str] = None


class ConversionErrorKind(str, Enum):
    RETRYABLE = "retryable"
    REJECTED = "rejected"
    CONFLICT = "conflict"


class ConversionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    success: bool
    already_converted: bool = False
    status: SubscriptionStatus
    trigger: Trigger = Trigger.CONVERT_NOW
    new_period_id: Optional[int] = None
    error_kind: Optional[ConversionErrorKind] = None
    error: Optional[str] = None

