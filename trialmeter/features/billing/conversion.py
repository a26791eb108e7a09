"""
Trial-to-paid conversion coordinator.

Reconciles the local trial state with the billing provider:
- convert_now: customer asks to end the trial early
- auto_convert_at_period_end: scheduler reports the trial period is over

Local state changes only after the provider confirms the charge, and then in
one transaction: status -> active, archive the trial period, open a fresh
zero-counter period. The whole operation runs under the tenant lock. The
coordinator never retries; callers use `error_kind` to decide.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import update

from trialmeter.core.config import settings
from trialmeter.core.database import get_db_session, tenants
from trialmeter.core.locks import lock_tenant_row, tenant_lock
from trialmeter.core.logging import log_event
from trialmeter.core.metrics import conversions_total
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.features.billing.provider import (
    BillingProvider,
    BillingRejectedError,
    BillingTransientError,
)
from trialmeter.features.trial.state_machine import transition
from trialmeter.features.usage.ledger import archive_and_reset
from trialmeter.features.variants.service import resolve_variant
from trialmeter.models.tenant import BlockReason, SubscriptionStatus, Tenant
from trialmeter.models.trial import ConversionErrorKind, ConversionResult, TransitionResult, Trigger
from trialmeter.models.usage import UsagePeriod


logger = logging.getLogger("trialmeter")


def _load_tenant(tenant_id: str) -> Tenant:
    with get_db_session() as session:
        return Tenant.from_row(lock_tenant_row(session, tenant_id))


def _result(tenant: Tenant, trigger: Trigger, *, success: bool, status: Optional[SubscriptionStatus] = None,
            already_converted: bool = False, new_period_id: Optional[int] = None,
            error_kind: Optional[ConversionErrorKind] = None, error: Optional[str] = None) -> ConversionResult:
    outcome = "already_converted" if already_converted else ("success" if success else error_kind.value)
    conversions_total.inc(labels={"trigger": trigger.value, "outcome": outcome})
    log_event(
        "info" if success else "warning",
        "conversion.result",
        tenant_id=tenant.tenant_id,
        event_type=f"conversion.{outcome}",
        error_code=error_kind.value if error_kind else None,
        extra={"trigger": trigger.value, "error": error} if error else {"trigger": trigger.value},
    )
    return ConversionResult(
        tenant_id=tenant.tenant_id,
        success=success,
        already_converted=already_converted,
        status=status or tenant.subscription_status,
        trigger=trigger,
        new_period_id=new_period_id,
        error_kind=error_kind,
        error=error,
    )


def _precheck(tenant: Tenant, trigger: Trigger) -> Optional[ConversionResult]:
    if tenant.subscription_status == SubscriptionStatus.ACTIVE:
        return _result(tenant, trigger, success=True, already_converted=True)
    if tenant.subscription_status == SubscriptionStatus.CANCELED:
        return _result(
            tenant, trigger, success=False,
            error_kind=ConversionErrorKind.CONFLICT,
            error="Tenant is canceled",
        )
    return None


def commit_conversion(
    session,
    tenant_id: str,
    trigger: Trigger,
    now: datetime,
    period_end: Optional[datetime] = None,
) -> Tuple[TransitionResult, Optional[UsagePeriod]]:
    """
    Apply a provider-confirmed conversion inside the caller's transaction.

    A tenant that is already active is left untouched (no second reset).
    """
    result = transition(session, tenant_id, SubscriptionStatus.ACTIVE, trigger, now=now)
    if not result.applied:
        return result, None

    end = as_utc(period_end) if period_end else None
    if end is None or end <= now:
        end = now + timedelta(days=settings.BILLING_PERIOD_DAYS)
    period = archive_and_reset(session, tenant_id, reason=f"converted:{trigger.value}", now=now, new_end=end)
    return result, period


def _commit(tenant: Tenant, trigger: Trigger, now: datetime, period_end: Optional[datetime]) -> ConversionResult:
    with get_db_session() as session:
        result, period = commit_conversion(session, tenant.tenant_id, trigger, now, period_end)

    if result.conflict:
        # Billing charged but local state moved under us; needs a human
        logger.error(
            "conversion.commit_conflict",
            extra={"tenant_id": tenant.tenant_id, "trigger": trigger.value, "error_code": "conflict"},
        )
        return _result(
            tenant, trigger, success=False, status=result.from_status,
            error_kind=ConversionErrorKind.CONFLICT, error=result.reason,
        )
    if result.noop:
        return _result(tenant, trigger, success=True, status=SubscriptionStatus.ACTIVE, already_converted=True)
    return _result(
        tenant, trigger, success=True, status=SubscriptionStatus.ACTIVE,
        new_period_id=period.period_id if period else None,
    )


def convert_now(
    tenant_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
) -> ConversionResult:
    """
    End the trial now and activate the tenant once billing confirms.

    Returns a ConversionResult; never raises for billing failures. Unknown
    tenants raise NotFoundError, a busy tenant LockTimeoutError.
    """
    now = as_utc(normalize_now(now))
    timeout = settings.BILLING_TIMEOUT_SECONDS if timeout is None else timeout
    trigger = Trigger.CONVERT_NOW

    with tenant_lock(tenant_id):
        tenant = _load_tenant(tenant_id)
        early = _precheck(tenant, trigger)
        if early is not None:
            return early
        if not tenant.billing_subscription_ref:
            return _result(
                tenant, trigger, success=False,
                error_kind=ConversionErrorKind.REJECTED,
                error="Tenant has no billing subscription",
            )

        try:
            state = provider.end_trial_now(tenant.billing_subscription_ref, timeout)
        except BillingTransientError as e:
            return _result(tenant, trigger, success=False, error_kind=ConversionErrorKind.RETRYABLE, error=str(e))
        except BillingRejectedError as e:
            return _result(tenant, trigger, success=False, error_kind=ConversionErrorKind.REJECTED, error=str(e))

        return _commit(tenant, trigger, now, state.current_period_end)


def block_for_expiry(session, tenant_id: str, now: datetime) -> TransitionResult:
    return transition(
        session, tenant_id, SubscriptionStatus.BLOCKED, Trigger.TRIAL_EXPIRED,
        now=now, reason=BlockReason.TRIAL_EXPIRED.value,
    )


def mark_trial_settled(session, tenant_id: str, now: datetime) -> None:
    session.execute(
        update(tenants).where(tenants.c.tenant_id == tenant_id).values(trial_settled_at=now)
    )


def _expire(tenant: Tenant, trigger: Trigger, now: datetime, error: str) -> ConversionResult:
    """Block a trialing tenant for expiry. Limit-blocked tenants keep their reason."""
    with get_db_session() as session:
        if tenant.subscription_status == SubscriptionStatus.TRIALING:
            block_for_expiry(session, tenant.tenant_id, now)
        mark_trial_settled(session, tenant.tenant_id, now)
    return _result(
        tenant, trigger, success=False, status=SubscriptionStatus.BLOCKED,
        error_kind=ConversionErrorKind.REJECTED, error=error,
    )


def auto_convert_at_period_end(
    tenant_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
) -> ConversionResult:
    """
    Settle a trial whose period has ended.

    Converts when the variant allows waiting for the scheduled conversion and
    billing confirms it. Otherwise the tenant is blocked with reason
    `trial_expired`. A transient billing failure changes nothing.
    """
    now = as_utc(normalize_now(now))
    timeout = settings.BILLING_TIMEOUT_SECONDS if timeout is None else timeout
    trigger = Trigger.AUTO_CONVERT

    with tenant_lock(tenant_id):
        tenant = _load_tenant(tenant_id)
        early = _precheck(tenant, trigger)
        if early is not None:
            return early
        if now < tenant.trial_period_end:
            return _result(
                tenant, trigger, success=False,
                error_kind=ConversionErrorKind.CONFLICT,
                error=f"Trial ends at {tenant.trial_period_end.isoformat()}",
            )

        variant = resolve_variant(tenant)
        if not variant.allow_wait_for_auto_convert:
            return _expire(tenant, trigger, now, f"Variant {variant.key} requires upgrading before the trial ends")
        if not tenant.billing_subscription_ref:
            return _expire(tenant, trigger, now, "Tenant has no billing subscription")

        try:
            state = provider.confirm_scheduled_conversion(tenant.billing_subscription_ref, timeout)
        except BillingTransientError as e:
            return _result(tenant, trigger, success=False, error_kind=ConversionErrorKind.RETRYABLE, error=str(e))
        except BillingRejectedError as e:
            return _expire(tenant, trigger, now, str(e))

        return _commit(tenant, trigger, now, state.current_period_end)
