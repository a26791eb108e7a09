"""
trialmeter/features/trial/service.py

Trial orchestration.

Handles:
- Trial start (variant assignment, first usage period)
- Call-completed metering: apply -> evaluate -> block
- Pre-call gate and dashboard snapshot
- Cancellation, early conversion and period-end settlement

Each mutating entry point takes the tenant lock, then the tenant row lock
inside its transaction.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging
import math

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from trialmeter.core.config import settings
from trialmeter.core.database import get_db_session, tenants
from trialmeter.core.errors import BillingDisabledError, ConflictError, InvariantViolationError, NotFoundError, ValidationError
from trialmeter.core.locks import lock_tenant_row, tenant_lock
from trialmeter.core.logging import log_event
from trialmeter.core.metrics import usage_events_total
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.features.billing import conversion
from trialmeter.features.billing import service as billing_service
from trialmeter.features.trial.state_machine import require_applied, transition
from trialmeter.features.usage.evaluator import ceil_minutes, evaluate, evaluate_usage, warning_level
from trialmeter.features.usage.ledger import (
    apply_event_in_session,
    archive_period,
    freeze_tenant,
    get_open_period,
    list_periods,
    open_period,
)
from trialmeter.features.variants.service import assign_variant, get_variant_table, resolve_variant
from trialmeter.models.snapshot import BlockSnapshot, CallGateDecision
from trialmeter.models.tenant import SubscriptionStatus, Tenant
from trialmeter.models.trial import ConversionResult, TransitionResult, Trigger
from trialmeter.models.usage import ApplyOutcome, ApplyResult, BlockDecision, LimitingDimension, UsageEvent


logger = logging.getLogger("trialmeter")

__all__ = [
    "get_tenant",
    "start_trial",
    "record_call_completed",
    "check_call_allowed",
    "get_block_snapshot",
    "cancel_trial",
    "convert_now",
    "handle_trial_period_end",
    "freeze_tenant",
]


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(normalize_now(now))


def _read_tenant(session, tenant_id: str) -> Optional[Tenant]:
    row = session.execute(select(tenants).where(tenants.c.tenant_id == tenant_id)).mappings().first()
    return Tenant.from_row(row) if row else None


def get_tenant(tenant_id: str) -> Tenant:
    with get_db_session() as session:
        tenant = _read_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return tenant


def start_trial(
    tenant_id: str,
    variant_key: Optional[str] = None,
    now: Optional[datetime] = None,
    billing_account_ref: Optional[str] = None,
    billing_subscription_ref: Optional[str] = None,
) -> Tenant:
    """
    Create a trialing tenant with its first usage period.

    Idempotent: an existing tenant is returned unchanged. Without an explicit
    `variant_key` the tenant is bucketed by `assign_variant`.
    """
    now = _now(now)
    table = get_variant_table()
    if variant_key is not None and table.get(variant_key) is None:
        raise ValidationError(f"Unknown trial variant: {variant_key}")
    key = variant_key or assign_variant(tenant_id, table)
    variant = table.variants[key]
    trial_end = now + timedelta(days=variant.trial_period_days)

    with tenant_lock(tenant_id):
        try:
            with get_db_session() as session:
                existing = _read_tenant(session, tenant_id)
                if existing is not None:
                    return existing
                session.execute(
                    insert(tenants).values(
                        tenant_id=tenant_id,
                        trial_variant_key=key,
                        subscription_status=SubscriptionStatus.TRIALING.value,
                        trial_period_end=trial_end,
                        billing_account_ref=billing_account_ref,
                        billing_subscription_ref=billing_subscription_ref,
                        usage_frozen=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
                open_period(session, tenant_id, now, trial_end)
                tenant = _read_tenant(session, tenant_id)
        except IntegrityError:
            # Another process created it first, or the subscription is linked elsewhere
            with get_db_session() as session:
                existing = _read_tenant(session, tenant_id)
            if existing is None:
                raise ConflictError(f"Billing subscription {billing_subscription_ref} is already linked to another tenant")
            return existing

    log_event(
        "info",
        "trial.started",
        tenant_id=tenant_id,
        event_type="trial.started",
        extra={"variant_key": key, "trial_period_end": trial_end.isoformat()},
    )
    return tenant


def record_call_completed(event: UsageEvent, now: Optional[datetime] = None) -> ApplyResult:
    """
    Meter one completed call and block the trial when a hard limit is reached.

    Duplicate deliveries are re-evaluated, so a crash between counting and
    blocking heals on the provider's retry.
    """
    now = _now(now)
    tenant_id = event.tenant_id

    with tenant_lock(tenant_id):
        try:
            with get_db_session() as session:
                tenant = Tenant.from_row(lock_tenant_row(session, tenant_id))
                period = get_open_period(session, tenant_id)
                if tenant.subscription_status == SubscriptionStatus.CANCELED or period is None:
                    usage_events_total.inc(labels={"outcome": ApplyOutcome.NO_OPEN_PERIOD.value})
                    log_event(
                        "warning",
                        "usage.no_open_period",
                        tenant_id=tenant_id,
                        event_type="usage.no_open_period",
                        extra={"event_id": event.event_id, "status": tenant.subscription_status.value},
                    )
                    return ApplyResult(outcome=ApplyOutcome.NO_OPEN_PERIOD, applied=False)

                result = apply_event_in_session(session, period.period_id, event)
                if tenant.subscription_status == SubscriptionStatus.ACTIVE:
                    return result

                decision = evaluate(result.period, resolve_variant(tenant))
                transition_result = None
                if tenant.subscription_status == SubscriptionStatus.TRIALING and decision.exceeded:
                    transition_result = transition(
                        session,
                        tenant_id,
                        SubscriptionStatus.BLOCKED,
                        Trigger.LIMIT_EXCEEDED,
                        now=now,
                        reason=decision.limiting_dimension.value,
                    )
                return result.model_copy(update={"decision": decision, "transition": transition_result})
        except InvariantViolationError as exc:
            freeze_tenant(tenant_id, exc.message)
            raise


def check_call_allowed(tenant_id: str, now: Optional[datetime] = None) -> CallGateDecision:
    """Pre-call gate for the voice provider."""
    now = _now(now)
    with get_db_session() as session:
        tenant = _read_tenant(session, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        period = get_open_period(session, tenant_id)

    status = tenant.subscription_status

    def _decision(allowed: bool, reason: Optional[str] = None) -> CallGateDecision:
        return CallGateDecision(tenant_id=tenant_id, allowed=allowed, status=status, reason=reason)

    if tenant.usage_frozen:
        return _decision(False, "usage_frozen")
    if status == SubscriptionStatus.CANCELED:
        return _decision(False, "canceled")
    if status == SubscriptionStatus.BLOCKED:
        return _decision(False, tenant.block_reason.value if tenant.block_reason else "blocked")
    if status == SubscriptionStatus.ACTIVE:
        return _decision(True)

    if now >= tenant.trial_period_end:
        return _decision(False, "trial_expired")
    if period is not None:
        decision = evaluate(period, resolve_variant(tenant))
        if decision.exceeded:
            return _decision(False, decision.limiting_dimension.value)
    return _decision(True)


def _days_remaining(end: datetime, now: datetime) -> int:
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def get_block_snapshot(tenant_id: str, now: Optional[datetime] = None) -> BlockSnapshot:
    """
    Usage and limits for the dashboard banner.

    Active tenants report their paid-cycle usage with limits of 0 (none)
    and no warning level.
    """
    now = _now(now)
    with get_db_session() as session:
        tenant = _read_tenant(session, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        period = get_open_period(session, tenant_id)
        if period is None:
            history = list_periods(session, tenant_id)
            period = history[-1] if history else None

    variant = resolve_variant(tenant)
    status = tenant.subscription_status
    if status == SubscriptionStatus.ACTIVE:
        # Paid cycle: usage is reported, trial limits no longer apply
        decision = BlockDecision(
            exceeded=False,
            limiting_dimension=LimitingDimension.NONE,
            percent_used=0.0,
            calls_used=period.calls_consumed if period else 0,
            calls_limit=0,
            minutes_used=ceil_minutes(period.duration_consumed_seconds) if period else 0,
            minutes_limit=0,
            calls_exceeded=False,
            duration_exceeded=False,
        )
    elif period is not None:
        decision = evaluate(period, variant)
    else:
        decision = evaluate_usage(0, 0, variant)

    in_trial = status in (SubscriptionStatus.TRIALING, SubscriptionStatus.BLOCKED)
    is_blocked = status == SubscriptionStatus.BLOCKED or (
        status == SubscriptionStatus.TRIALING and (decision.exceeded or now >= tenant.trial_period_end)
    )

    return BlockSnapshot(
        tenant_id=tenant_id,
        status=status,
        variant_key=variant.key,
        is_blocked=is_blocked,
        limiting_dimension=decision.limiting_dimension,
        calls_used=decision.calls_used,
        calls_limit=decision.calls_limit,
        minutes_used=decision.minutes_used,
        minutes_limit=decision.minutes_limit,
        percent_used=decision.percent_used,
        days_remaining=_days_remaining(tenant.trial_period_end, now) if in_trial else 0,
        trial_period_end=tenant.trial_period_end,
        warning_level=warning_level(decision, settings.USAGE_WARNING_THRESHOLDS),
        block_reason=tenant.block_reason.value if tenant.block_reason and status == SubscriptionStatus.BLOCKED else None,
    )


def cancel_trial(tenant_id: str, now: Optional[datetime] = None) -> TransitionResult:
    """
    Cancel a trialing or blocked tenant.

    The billing subscription is canceled first (when billing is configured);
    provider errors propagate and leave local state untouched.
    """
    now = _now(now)
    with tenant_lock(tenant_id):
        tenant = get_tenant(tenant_id)
        if tenant.subscription_status == SubscriptionStatus.ACTIVE:
            raise ConflictError(f"Tenant {tenant_id} is active; cancel the paid subscription instead")

        if tenant.subscription_status != SubscriptionStatus.CANCELED:
            provider = billing_service.get_provider()
            if provider is not None and tenant.billing_subscription_ref:
                provider.cancel_subscription(tenant.billing_subscription_ref, settings.BILLING_TIMEOUT_SECONDS)

        with get_db_session() as session:
            result = require_applied(
                transition(session, tenant_id, SubscriptionStatus.CANCELED, Trigger.CANCEL, now=now)
            )
            period = get_open_period(session, tenant_id)
            if period is not None:
                archive_period(session, period.period_id, "canceled", now)
    return result


def _require_provider():
    provider = billing_service.get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured. Set STRIPE_SECRET_KEY.")
    return provider


def convert_now(tenant_id: str, now: Optional[datetime] = None) -> ConversionResult:
    return conversion.convert_now(tenant_id, _require_provider(), now=now)


def handle_trial_period_end(tenant_id: str, now: Optional[datetime] = None) -> ConversionResult:
    """Entry point for the external scheduler once a trial period is over."""
    return conversion.auto_convert_at_period_end(tenant_id, _require_provider(), now=now)
