"""
Test billing webhook processing.

Verifies processed webhook events are not reprocessed, that a failed delivery
is applied on redelivery, and that subscription events reconcile trial state.
"""
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy import select

from trialmeter.core.config import settings
from trialmeter.core.database import get_db_session, billing_events
from trialmeter.core.errors import LockTimeoutError
from trialmeter.core.locks import tenant_lock
from trialmeter.core.metrics import billing_webhooks_total
from trialmeter.features.billing.provider import BillingWebhookResult
from trialmeter.features.billing.service import process_webhook_event
from trialmeter.features.trial.service import get_tenant, start_trial
from trialmeter.features.usage.ledger import get_open_period, list_periods
from trialmeter.models.tenant import SubscriptionStatus
from trialmeter.models.usage import PeriodStatus


HEADERS = {"stripe-signature": "sig123"}


def _webhook(event_id, event_type, *, tenant_id=None, subscription_id="sub_hook", status=None, period_end=None):
    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        customer_id="cus_hook",
        status=status,
        current_period_end=period_end,
        trial_end=None,
        metadata={"tenant_id": tenant_id} if tenant_id else {},
    )


def _event_rows(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).mappings().all()


@pytest.fixture
def hook_tenant(now):
    return start_trial("tenant_hook", variant_key="control", now=now, billing_subscription_ref="sub_hook")


def test_webhook_idempotency_skips_duplicate_events(mock_provider, hook_tenant, now):
    """process_webhook_event should skip events with duplicate stripe_event_id."""
    mock_provider.handle_webhook.return_value = _webhook(
        "evt_dup", "customer.subscription.updated",
        tenant_id="tenant_hook", status="active", period_end=now + timedelta(days=30),
    )
    body = b'{"id": "evt_dup", "type": "customer.subscription.updated"}'

    first = process_webhook_event(HEADERS, body, now=now)
    second = process_webhook_event(HEADERS, body, now=now)

    assert first.event_id == second.event_id == "evt_dup"
    rows = _event_rows("evt_dup")
    assert len(rows) == 1
    assert rows[0]["processed"] is True
    assert rows[0]["tenant_id"] == "tenant_hook"
    assert billing_webhooks_total.value(
        {"event_type": "customer.subscription.updated", "outcome": "duplicate"}
    ) == 1.0

    # Converted exactly once: one archived trial period plus the paid one
    with get_db_session() as session:
        assert len(list_periods(session, "tenant_hook")) == 2


def test_subscription_active_converts_trialing_tenant(mock_provider, hook_tenant, now):
    mock_provider.handle_webhook.return_value = _webhook(
        "evt_active", "customer.subscription.updated",
        status="active", period_end=now + timedelta(days=30),
    )

    process_webhook_event(HEADERS, b"{}", now=now + timedelta(days=1))

    tenant = get_tenant("tenant_hook")
    assert tenant.subscription_status == SubscriptionStatus.ACTIVE
    with get_db_session() as session:
        period = get_open_period(session, "tenant_hook")
    assert period.calls_consumed == 0
    assert period.period_end == now + timedelta(days=30)


def test_subscription_trialing_update_is_ignored(mock_provider, hook_tenant, now):
    mock_provider.handle_webhook.return_value = _webhook(
        "evt_trialing", "customer.subscription.updated", status="trialing",
    )
    process_webhook_event(HEADERS, b"{}", now=now)

    assert get_tenant("tenant_hook").subscription_status == SubscriptionStatus.TRIALING
    assert billing_webhooks_total.value(
        {"event_type": "customer.subscription.updated", "outcome": "ignored"}
    ) == 1.0


def test_subscription_deleted_cancels_and_archives(mock_provider, hook_tenant, now):
    mock_provider.handle_webhook.return_value = _webhook("evt_del", "customer.subscription.deleted", status="canceled")

    process_webhook_event(HEADERS, b"{}", now=now)

    assert get_tenant("tenant_hook").subscription_status == SubscriptionStatus.CANCELED
    with get_db_session() as session:
        periods = list_periods(session, "tenant_hook")
    assert [p.status for p in periods] == [PeriodStatus.ARCHIVED]
    assert periods[0].archive_reason == "billing_canceled"


def test_event_for_unknown_subscription_is_recorded(mock_provider, now):
    mock_provider.handle_webhook.return_value = _webhook(
        "evt_orphan", "customer.subscription.deleted", subscription_id="sub_unknown",
    )

    process_webhook_event(HEADERS, b"{}", now=now)

    rows = _event_rows("evt_orphan")
    assert rows[0]["tenant_id"] is None
    assert rows[0]["processed"] is True


def test_processing_error_is_stored_and_raised(mock_provider, hook_tenant, now):
    mock_provider.handle_webhook.return_value = _webhook("evt_boom", "customer.subscription.deleted")

    with patch(
        "trialmeter.features.billing.service.apply_subscription_state",
        side_effect=RuntimeError("db went away"),
    ):
        with pytest.raises(RuntimeError):
            process_webhook_event(HEADERS, b"{}", now=now)

    rows = _event_rows("evt_boom")
    assert rows[0]["processed"] is False
    assert "db went away" in rows[0]["error"]
    assert get_tenant("tenant_hook").subscription_status == SubscriptionStatus.TRIALING

    # Redelivery of the failed event is applied, not skipped as a duplicate
    process_webhook_event(HEADERS, b"{}", now=now)

    assert get_tenant("tenant_hook").subscription_status == SubscriptionStatus.CANCELED
    rows = _event_rows("evt_boom")
    assert len(rows) == 1
    assert rows[0]["processed"] is True
    assert rows[0]["error"] is None


def test_redelivery_after_busy_tenant_converts(mock_provider, hook_tenant, now, monkeypatch):
    monkeypatch.setattr(settings, "TENANT_LOCK_TIMEOUT_SECONDS", 0.1)
    mock_provider.handle_webhook.return_value = _webhook(
        "evt_busy", "customer.subscription.updated",
        tenant_id="tenant_hook", status="active", period_end=now + timedelta(days=30),
    )

    with tenant_lock("tenant_hook"):
        with pytest.raises(LockTimeoutError):
            process_webhook_event(HEADERS, b"{}", now=now)
    assert _event_rows("evt_busy")[0]["processed"] is False

    process_webhook_event(HEADERS, b"{}", now=now)

    assert get_tenant("tenant_hook").subscription_status == SubscriptionStatus.ACTIVE
    assert _event_rows("evt_busy")[0]["processed"] is True
    assert billing_webhooks_total.value(
        {"event_type": "customer.subscription.updated", "outcome": "duplicate"}
    ) == 0.0

    # Once processed, further redeliveries are duplicates
    process_webhook_event(HEADERS, b"{}", now=now)
    assert billing_webhooks_total.value(
        {"event_type": "customer.subscription.updated", "outcome": "duplicate"}
    ) == 1.0
