"""
Tests for the usage ledger.

Verifies idempotent apply, per-tenant serialization, archive/reset and
retention of applied event ids.
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from trialmeter.core.database import get_db_session, tenants, usage_periods, usage_period_events
from trialmeter.core.errors import ConflictError, InvariantViolationError, NotFoundError, ValidationError
from trialmeter.core.metrics import invariant_violations_total, usage_events_total
from trialmeter.features.trial.service import get_tenant, start_trial
from trialmeter.features.usage.ledger import (
    apply_event,
    archive_and_reset,
    archive_period,
    count_prunable_periods,
    get_open_period,
    list_periods,
    open_period,
    prune_applied_events,
)
from trialmeter.models.usage import ApplyOutcome, PeriodStatus, UsageEvent


@pytest.fixture
def tenant(now):
    return start_trial("tenant_ledger", variant_key="control", now=now)


def _open_period_id(tenant_id):
    with get_db_session() as session:
        return get_open_period(session, tenant_id).period_id


def _event(event_id, seconds=60, tenant_id="tenant_ledger"):
    return UsageEvent(event_id=event_id, tenant_id=tenant_id, duration_seconds=seconds)


def test_start_trial_opens_zero_period(tenant, now):
    with get_db_session() as session:
        period = get_open_period(session, tenant.tenant_id)
    assert period.calls_consumed == 0
    assert period.duration_consumed_seconds == 0
    assert period.period_start == now
    assert period.period_end == now + timedelta(days=14)


def test_apply_event_increments_counters(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    result = apply_event(period_id, _event("call_1", 61))

    assert result.outcome == ApplyOutcome.APPLIED
    assert result.applied is True
    assert result.period.calls_consumed == 1
    assert result.period.duration_consumed_seconds == 61
    assert usage_events_total.value({"outcome": "applied"}) == 1.0


def test_duplicate_event_is_noop(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    first = apply_event(period_id, _event("call_dup", 90))
    second = apply_event(period_id, _event("call_dup", 90))

    assert first.applied is True
    assert second.outcome == ApplyOutcome.DUPLICATE
    assert second.applied is False
    assert second.period.calls_consumed == 1
    assert second.period.duration_consumed_seconds == 90
    assert usage_events_total.value({"outcome": "duplicate"}) == 1.0

    with get_db_session() as session:
        rows = session.execute(
            select(usage_period_events).where(usage_period_events.c.event_id == "call_dup")
        ).fetchall()
    assert len(rows) == 1


def test_same_event_id_for_other_tenant_is_counted(tenant, now):
    start_trial("tenant_other", variant_key="control", now=now)
    apply_event(_open_period_id(tenant.tenant_id), _event("shared_call"))
    result = apply_event(_open_period_id("tenant_other"), _event("shared_call", tenant_id="tenant_other"))
    assert result.applied is True


def test_concurrent_distinct_events_are_both_counted(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    barrier = threading.Barrier(2)
    errors = []

    def worker(event_id):
        try:
            barrier.wait()
            apply_event(period_id, _event(event_id, 30))
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(f"call_{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with get_db_session() as session:
        period = get_open_period(session, tenant.tenant_id)
    assert period.calls_consumed == 2
    assert period.duration_consumed_seconds == 60


def test_concurrent_duplicate_delivery_counts_once(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    results = []

    def worker():
        results.append(apply_event(period_id, _event("call_race", 45)))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.outcome.value for r in results) == ["applied", "duplicate", "duplicate", "duplicate"]
    with get_db_session() as session:
        period = get_open_period(session, tenant.tenant_id)
    assert period.calls_consumed == 1


def test_counters_never_decrease(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    seen = []
    for i, seconds in enumerate([10, 0, 200, 5]):
        result = apply_event(period_id, _event(f"call_{i}", seconds))
        seen.append((result.period.calls_consumed, result.period.duration_consumed_seconds))
    assert seen == sorted(seen)
    assert seen[-1] == (4, 215)


def test_zero_duration_call_counts_as_call(tenant):
    result = apply_event(_open_period_id(tenant.tenant_id), _event("call_zero", 0))
    assert result.period.calls_consumed == 1
    assert result.period.duration_consumed_seconds == 0


def test_apply_to_archived_period_conflicts(tenant, now):
    period_id = _open_period_id(tenant.tenant_id)
    with get_db_session() as session:
        archive_period(session, period_id, "test", now)

    with pytest.raises(ConflictError):
        apply_event(period_id, _event("late_call"))


def test_apply_to_unknown_period(tenant):
    with pytest.raises(NotFoundError):
        apply_event(9999, _event("call_x"))


def test_apply_to_other_tenants_period(tenant, now):
    start_trial("tenant_b", variant_key="control", now=now)
    with pytest.raises(ValidationError):
        apply_event(_open_period_id("tenant_b"), _event("call_x"))


def test_second_open_period_rejected(tenant, now):
    with pytest.raises(ConflictError):
        with get_db_session() as session:
            open_period(session, tenant.tenant_id, now, now + timedelta(days=1))


def test_period_end_must_follow_start(now):
    start_trial("tenant_window", variant_key="control", now=now)
    with get_db_session() as session:
        archive_period(session, get_open_period(session, "tenant_window").period_id, "test", now)
    with pytest.raises(ValidationError):
        with get_db_session() as session:
            open_period(session, "tenant_window", now, now)


def test_archive_and_reset_opens_fresh_period(tenant, now):
    period_id = _open_period_id(tenant.tenant_id)
    apply_event(period_id, _event("call_1", 120))

    with get_db_session() as session:
        fresh = archive_and_reset(session, tenant.tenant_id, "converted", now=now + timedelta(days=1))
        history = list_periods(session, tenant.tenant_id)

    assert fresh.period_id != period_id
    assert fresh.calls_consumed == 0
    assert fresh.duration_consumed_seconds == 0
    assert [p.status for p in history] == [PeriodStatus.ARCHIVED, PeriodStatus.OPEN]
    assert history[0].calls_consumed == 1
    assert history[0].archive_reason == "converted"


def test_event_redelivered_after_reset_is_duplicate(tenant, now):
    apply_event(_open_period_id(tenant.tenant_id), _event("call_1", 120))
    with get_db_session() as session:
        archive_and_reset(session, tenant.tenant_id, "converted", now=now)

    result = apply_event(_open_period_id(tenant.tenant_id), _event("call_1", 120))
    assert result.outcome == ApplyOutcome.DUPLICATE
    assert result.period.calls_consumed == 0


def test_archive_is_idempotent(tenant, now):
    period_id = _open_period_id(tenant.tenant_id)
    with get_db_session() as session:
        first = archive_period(session, period_id, "first", now)
        second = archive_period(session, period_id, "second", now + timedelta(hours=1))
    assert first.archive_reason == "first"
    assert second.archive_reason == "first"
    assert second.archived_at == now


def test_counter_drift_freezes_tenant(tenant):
    period_id = _open_period_id(tenant.tenant_id)
    apply_event(period_id, _event("call_1", 60))

    # Simulate a write that bypassed the ledger
    with get_db_session() as session:
        session.execute(update(usage_periods).where(usage_periods.c.id == period_id).values(calls_consumed=5))

    with pytest.raises(InvariantViolationError):
        apply_event(period_id, _event("call_2", 60))

    assert get_tenant(tenant.tenant_id).usage_frozen is True
    assert invariant_violations_total.value() == 1.0
    with get_db_session() as session:
        row = session.execute(
            select(usage_period_events.c.id).where(usage_period_events.c.event_id == "call_2")
        ).fetchone()
    assert row is None

    # Frozen tenants reject further usage
    with pytest.raises(InvariantViolationError) as exc_info:
        apply_event(period_id, _event("call_3", 60))
    assert exc_info.value.code == "tenant_frozen"


def test_prune_only_touches_old_archived_periods(tenant, now):
    period_id = _open_period_id(tenant.tenant_id)
    apply_event(period_id, _event("call_1", 60))
    apply_event(period_id, _event("call_2", 60))
    with get_db_session() as session:
        archive_and_reset(session, tenant.tenant_id, "converted", now=now)
    apply_event(_open_period_id(tenant.tenant_id), _event("call_3", 60))

    # Inside the retention window nothing is pruned
    assert prune_applied_events(now=now + timedelta(days=3), retention_days=7) == {"periods": 0, "events": 0}

    later = now + timedelta(days=8)
    assert prune_applied_events(now=later, retention_days=7) == {"periods": 1, "events": 2}
    assert prune_applied_events(now=later, retention_days=7) == {"periods": 0, "events": 0}

    with get_db_session() as session:
        remaining = session.execute(select(usage_period_events.c.event_id)).scalars().all()
        archived = list_periods(session, tenant.tenant_id)[0]
    assert remaining == ["call_3"]
    assert archived.event_ids_pruned_at == later
    assert archived.calls_consumed == 2


def test_prunable_count_matches_what_prune_deletes(tenant, now):
    apply_event(_open_period_id(tenant.tenant_id), _event("call_1", 60))
    with get_db_session() as session:
        archive_and_reset(session, tenant.tenant_id, "converted", now=now)
        archive_and_reset(session, tenant.tenant_id, "converted", now=now + timedelta(days=5))

    for days, expected in ((3, 0), (8, 1), (13, 1)):
        at = now + timedelta(days=days)
        assert count_prunable_periods(now=at, retention_days=7) == expected
        assert prune_applied_events(now=at, retention_days=7)["periods"] == expected
        assert count_prunable_periods(now=at, retention_days=7) == 0


def test_tenant_row_unchanged_by_usage(tenant):
    apply_event(_open_period_id(tenant.tenant_id), _event("call_1", 60))
    with get_db_session() as session:
        status = session.execute(
            select(tenants.c.subscription_status).where(tenants.c.tenant_id == tenant.tenant_id)
        ).scalar()
    assert status == "trialing"
