"""
Billing service orchestrator.

Coordinates:
- Provider access (Stripe when configured)
- Webhook processing with event-level idempotency
- Subscription state -> trial state reconciliation

All Stripe-specific code is in stripe_provider.py.
"""
import os
import hashlib
import logging
from typing import Optional, Dict
from datetime import datetime
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from trialmeter.core.database import get_db_session, billing_events, tenants
from trialmeter.core.locks import tenant_lock
from trialmeter.core.logging import log_event
from trialmeter.core.metrics import billing_webhooks_total
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.features.billing.conversion import commit_conversion
from trialmeter.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from trialmeter.features.billing.stripe_provider import StripeProvider
from trialmeter.features.trial.state_machine import transition
from trialmeter.features.usage.ledger import archive_period, get_open_period
from trialmeter.models.tenant import SubscriptionStatus, Tenant
from trialmeter.models.trial import Trigger


logger = logging.getLogger("trialmeter")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError as e:
        logger.warning("billing.provider_unavailable", extra={"error_code": "billing_disabled", "error": str(e)})
        return None


def _find_tenant_id(session, result: BillingWebhookResult) -> Optional[str]:
    if result.tenant_id:
        return result.tenant_id
    if not result.subscription_id:
        return None
    return session.execute(
        select(tenants.c.tenant_id).where(tenants.c.billing_subscription_ref == result.subscription_id)
    ).scalar()


def apply_subscription_state(tenant_id: str, result: BillingWebhookResult, now: Optional[datetime] = None) -> Optional[str]:
    """
    Reconcile one subscription event with the tenant's trial state.

    Returns a short outcome label for logs/metrics, or None when the event
    does not concern trial state.
    """
    now = as_utc(normalize_now(now))

    with tenant_lock(tenant_id):
        with get_db_session() as session:
            row = session.execute(
                select(tenants).where(tenants.c.tenant_id == tenant_id)
            ).mappings().first()
            if row is None:
                return "unknown_tenant"
            tenant = Tenant.from_row(row)

            if result.event_type == "customer.subscription.deleted":
                outcome = transition(session, tenant_id, SubscriptionStatus.CANCELED, Trigger.BILLING_CANCELED, now=now)
                if outcome.applied:
                    period = get_open_period(session, tenant_id)
                    if period is not None:
                        archive_period(session, period.period_id, "billing_canceled", now)
                return "conflict" if outcome.conflict else "canceled"

            if result.event_type == "customer.subscription.updated" and result.status == "active":
                if tenant.subscription_status not in (SubscriptionStatus.TRIALING, SubscriptionStatus.BLOCKED):
                    return "noop"
                trigger = Trigger.AUTO_CONVERT if now >= tenant.trial_period_end else Trigger.CONVERT_NOW
                outcome, _ = commit_conversion(session, tenant_id, trigger, now, result.current_period_end)
                return "conflict" if outcome.conflict else "converted"

    return None


def _mark_event(event_id: str, **values) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(**values)
        )


def process_webhook_event(headers: Dict[str, str], body: bytes, now: Optional[datetime] = None) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip only if already processed)
    3. Apply state changes
    4. Mark as processed (or store the error and re-raise)

    A delivery whose processing failed stays unprocessed, so the provider's
    retry of the same event is applied again. State changes are idempotent
    per tenant, which makes reprocessing safe.

    Raises:
        BillingWebhookError: If billing disabled, signature invalid or payload malformed
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        tenant_id = _find_tenant_id(session, result)
        existing = session.execute(
            select(billing_events.c.processed, billing_events.c.error)
            .where(billing_events.c.stripe_event_id == result.event_id)
        ).mappings().first()

    if existing is not None and existing["processed"]:
        billing_webhooks_total.inc(labels={"event_type": result.event_type, "outcome": "duplicate"})
        return result

    if existing is None:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        tenant_id=tenant_id,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
        except IntegrityError:
            # Another worker is processing this delivery right now; if it
            # fails, the provider's next retry lands in the branch below
            billing_webhooks_total.inc(labels={"event_type": result.event_type, "outcome": "duplicate"})
            return result
    else:
        log_event(
            "warning",
            "billing.webhook_reprocessing",
            tenant_id=tenant_id,
            event_type=result.event_type,
            extra={"stripe_event_id": result.event_id, "previous_error": existing["error"]},
        )

    processed_at = as_utc(normalize_now(now))
    try:
        outcome = apply_subscription_state(tenant_id, result, now=now) if tenant_id else None
        _mark_event(result.event_id, processed=True, processed_at=processed_at, error=None, tenant_id=tenant_id)
    except Exception as e:
        _mark_event(result.event_id, error=str(e)[:2000])
        billing_webhooks_total.inc(labels={"event_type": result.event_type, "outcome": "error"})
        raise

    billing_webhooks_total.inc(labels={"event_type": result.event_type, "outcome": outcome or "ignored"})
    log_event(
        "info",
        "billing.webhook_processed",
        tenant_id=tenant_id,
        event_type=result.event_type,
        extra={"stripe_event_id": result.event_id, "outcome": outcome or "ignored"},
    )
    return result
