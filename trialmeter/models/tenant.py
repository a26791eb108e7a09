"""
trialmeter/models/tenant.py

Tenant lifecycle model.

A tenant is the billing customer of the voice service. Its
`subscription_status` is owned by the trial state machine.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict

from trialmeter.core.timeutil import as_utc


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    BLOCKED = "blocked"
    ACTIVE = "active"
    CANCELED = "canceled"


class BlockReason(str, Enum):
    CALLS = "calls"
    DURATION = "duration"
    TRIAL_EXPIRED = "trial_expired"


class Tenant(BaseModel):
    """
    Tenant snapshot read from the `tenants` table.

    `billing_subscription_ref` is the Stripe subscription that will be
    charged on conversion; tenants without one cannot be converted.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    trial_variant_key: Optional[str] = None
    subscription_status: SubscriptionStatus
    trial_period_end: datetime
    billing_account_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    blocked_at: Optional[datetime] = None
    block_reason: Optional[BlockReason] = None
    converted_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_settled_at: Optional[datetime] = None
    usage_frozen: bool = False
    frozen_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Tenant":
        return cls(
            tenant_id=row["tenant_id"],
            trial_variant_key=row["trial_variant_key"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            trial_period_end=as_utc(row["trial_period_end"]),
            billing_account_ref=row["billing_account_ref"],
            billing_subscription_ref=row["billing_subscription_ref"],
            blocked_at=as_utc(row["blocked_at"]),
            block_reason=row["block_reason"],
            converted_at=as_utc(row["converted_at"]),
            canceled_at=as_utc(row["canceled_at"]),
            trial_settled_at=as_utc(row["trial_settled_at"]),
            usage_frozen=bool(row["usage_frozen"]),
            frozen_reason=row["frozen_reason"],
        )
