"""Tests for the scheduled jobs (event id retention, expired trial sweep)."""
from datetime import timedelta

from trialmeter.core.database import get_db_session
from trialmeter.features.billing.provider import BillingTransientError, SubscriptionState
from trialmeter.features.trial.service import cancel_trial, get_tenant, record_call_completed, start_trial
from trialmeter.features.usage.ledger import archive_and_reset
from trialmeter.models.tenant import BlockReason, SubscriptionStatus
from trialmeter.models.usage import UsageEvent
from trialmeter.workers.prune_applied_events import prune_usage_event_ids
from trialmeter.workers.settle_expired_trials import run_settle_job


def _seed_archived_period(now):
    start_trial("tenant_prune", now=now)
    for i in range(3):
        record_call_completed(UsageEvent(event_id=f"c{i}", tenant_id="tenant_prune", duration_seconds=30), now=now)
    with get_db_session() as session:
        archive_and_reset(session, "tenant_prune", "converted", now=now)


def test_prune_dry_run_counts_without_deleting(now):
    _seed_archived_period(now)

    summary = prune_usage_event_ids(retention_days=7, dry_run=True, now=now + timedelta(days=10))

    assert summary["candidates"] == 1
    assert summary["deleted_events"] == 0
    again = prune_usage_event_ids(retention_days=7, now=now + timedelta(days=10))
    assert again["pruned_periods"] == 1
    assert again["deleted_events"] == 3


def test_prune_respects_retention(now):
    _seed_archived_period(now)
    summary = prune_usage_event_ids(retention_days=7, now=now + timedelta(days=2))
    assert summary["pruned_periods"] == 0


def test_settle_job_handles_each_due_tenant(now, mock_provider):
    start_trial("tenant_auto", variant_key="control", now=now, billing_subscription_ref="sub_auto")
    start_trial("tenant_strict", variant_key="strict", now=now, billing_subscription_ref="sub_strict")
    start_trial("tenant_wait", variant_key="generous", now=now, billing_subscription_ref="sub_wait")
    start_trial("tenant_fresh", variant_key="very_generous", now=now)
    start_trial("tenant_gone", variant_key="short", now=now)
    cancel_trial("tenant_gone", now=now)

    def confirm(subscription_id, timeout):
        if subscription_id == "sub_wait":
            raise BillingTransientError("not settled")
        return SubscriptionState(subscription_id=subscription_id, status="active")

    mock_provider.confirm_scheduled_conversion.side_effect = confirm

    stats = run_settle_job(now=now + timedelta(days=14))

    assert stats["due"] == 3
    assert stats["converted"] == 1
    assert stats["blocked"] == 1
    assert stats["retry"] == 1
    assert stats["failed"] == 0
    assert get_tenant("tenant_auto").subscription_status == SubscriptionStatus.ACTIVE
    assert get_tenant("tenant_strict").block_reason == BlockReason.TRIAL_EXPIRED
    assert get_tenant("tenant_wait").subscription_status == SubscriptionStatus.TRIALING
    assert get_tenant("tenant_fresh").subscription_status == SubscriptionStatus.TRIALING

    # Expired-blocked tenants are not picked up again
    rerun = run_settle_job(now=now + timedelta(days=14))
    assert rerun["due"] == 1
    assert rerun["retry"] == 1


def test_settle_job_counts_failures_without_billing(now):
    start_trial("tenant_nobill", variant_key="control", now=now)
    stats = run_settle_job(now=now + timedelta(days=15))
    assert stats["due"] == 1
    assert stats["failed"] == 1


def _limit_blocked(tenant_id, now):
    start_trial(tenant_id, variant_key="strict", now=now)
    for i in range(5):
        record_call_completed(
            UsageEvent(event_id=f"{tenant_id}_{i}", tenant_id=tenant_id, duration_seconds=60), now=now
        )
    assert get_tenant(tenant_id).block_reason == BlockReason.CALLS


def test_settle_job_moves_past_limit_blocked_tenants(now, mock_provider):
    _limit_blocked("tenant_a_stale", now)
    _limit_blocked("tenant_b_stale", now)
    start_trial("tenant_z_new", variant_key="strict", now=now + timedelta(hours=1))
    later = now + timedelta(days=8)

    first = run_settle_job(now=later, limit=2)
    assert first["due"] == 2
    assert first["already_blocked"] == 2
    assert first["blocked"] == 0
    assert get_tenant("tenant_a_stale").block_reason == BlockReason.CALLS
    assert get_tenant("tenant_a_stale").trial_settled_at == later

    second = run_settle_job(now=later, limit=2)
    assert second["due"] == 1
    assert second["blocked"] == 1
    tenant = get_tenant("tenant_z_new")
    assert tenant.subscription_status == SubscriptionStatus.BLOCKED
    assert tenant.block_reason == BlockReason.TRIAL_EXPIRED

    assert run_settle_job(now=later, limit=2)["due"] == 0
    mock_provider.confirm_scheduled_conversion.assert_not_called()
