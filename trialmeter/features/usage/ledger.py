"""
trialmeter/features/usage/ledger.py

Usage ledger: idempotent, per-tenant atomic counter updates.

Handles:
- Opening, archiving and rolling over usage periods
- Applying call-completed events exactly once per (tenant, event id)
- Counter integrity checks and tenant quarantine on violation
- Retention of applied event ids for archived periods

Every write here expects the caller to hold `tenant_lock(tenant_id)` and,
inside the transaction, the tenant row lock (`lock_tenant_row`). The
`*_in_session` functions never commit; `get_db_session()` owns that.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from trialmeter.core.config import settings
from trialmeter.core.database import get_db_session, tenants, usage_periods, usage_period_events
from trialmeter.core.errors import ConflictError, InvariantViolationError, NotFoundError, ValidationError
from trialmeter.core.locks import lock_tenant_row, tenant_lock
from trialmeter.core.logging import log_event
from trialmeter.core.metrics import invariant_violations_total, usage_events_total
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.models.usage import ApplyOutcome, ApplyResult, PeriodStatus, UsageEvent, UsagePeriod


logger = logging.getLogger("trialmeter")


def _utc_now(now: Optional[datetime]) -> datetime:
    return as_utc(normalize_now(now))


def get_period(session, period_id: int) -> Optional[UsagePeriod]:
    row = session.execute(
        select(usage_periods).where(usage_periods.c.id == period_id)
    ).mappings().first()
    return UsagePeriod.from_row(row) if row else None


def get_open_period(session, tenant_id: str) -> Optional[UsagePeriod]:
    row = session.execute(
        select(usage_periods).where(
            and_(
                usage_periods.c.tenant_id == tenant_id,
                usage_periods.c.status == PeriodStatus.OPEN.value,
            )
        )
    ).mappings().first()
    return UsagePeriod.from_row(row) if row else None


def list_periods(session, tenant_id: str) -> List[UsagePeriod]:
    rows = session.execute(
        select(usage_periods)
        .where(usage_periods.c.tenant_id == tenant_id)
        .order_by(usage_periods.c.id)
    ).mappings().all()
    return [UsagePeriod.from_row(row) for row in rows]


def open_period(session, tenant_id: str, start: datetime, end: datetime) -> UsagePeriod:
    """Open a zero-counter period. A tenant has at most one open period."""
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValidationError("period_end must be after period_start")
    if get_open_period(session, tenant_id) is not None:
        raise ConflictError(f"Tenant {tenant_id} already has an open usage period")

    result = session.execute(
        insert(usage_periods).values(
            tenant_id=tenant_id,
            status=PeriodStatus.OPEN.value,
            period_start=start,
            period_end=end,
            calls_consumed=0,
            duration_consumed_seconds=0,
        )
    )
    period_id = result.inserted_primary_key[0]
    log_event(
        "info",
        "usage.period_opened",
        tenant_id=tenant_id,
        event_type="usage.period_opened",
        extra={"period_id": period_id, "period_end": end.isoformat()},
    )
    return get_period(session, period_id)


def _is_frozen(session, tenant_id: str) -> bool:
    frozen = session.execute(
        select(tenants.c.usage_frozen).where(tenants.c.tenant_id == tenant_id)
    ).scalar()
    return bool(frozen)


def apply_event_in_session(session, period_id: int, event: UsageEvent) -> ApplyResult:
    """
    Apply one call-completed event to a period inside the caller's transaction.

    Returns outcome `applied` or `duplicate`. The event id is recorded for the
    tenant, so a redelivery is a no-op whether it addresses this period or a
    later one.

    Raises:
        NotFoundError: unknown period
        ValidationError: period belongs to another tenant
        ConflictError: period is archived
        InvariantViolationError: tenant is frozen, or counters disagree with
            the applied events after the write
    """
    period = get_period(session, period_id)
    if period is None:
        raise NotFoundError(f"Usage period {period_id} not found")
    if period.tenant_id != event.tenant_id:
        raise ValidationError(f"Usage period {period_id} does not belong to tenant {event.tenant_id}")
    if _is_frozen(session, event.tenant_id):
        raise InvariantViolationError(
            f"Usage for tenant {event.tenant_id} is frozen pending review",
            code="tenant_frozen",
            tenant_id=event.tenant_id,
        )
    if period.status != PeriodStatus.OPEN:
        raise ConflictError(f"Usage period {period_id} is archived")

    try:
        with session.begin_nested():
            session.execute(
                insert(usage_period_events).values(
                    period_id=period_id,
                    tenant_id=event.tenant_id,
                    event_id=event.event_id,
                    duration_seconds=event.duration_seconds,
                    has_prior_usage=event.has_prior_usage,
                    occurred_at=as_utc(event.occurred_at),
                )
            )
    except IntegrityError:
        usage_events_total.inc(labels={"outcome": ApplyOutcome.DUPLICATE.value})
        log_event(
            "info",
            "usage.duplicate_event",
            tenant_id=event.tenant_id,
            event_type="usage.duplicate",
            extra={"period_id": period_id, "event_id": event.event_id},
        )
        return ApplyResult(outcome=ApplyOutcome.DUPLICATE, applied=False, period=period)

    # Relative update; the row is never read-modified-written from Python
    session.execute(
        update(usage_periods)
        .where(usage_periods.c.id == period_id)
        .values(
            calls_consumed=usage_periods.c.calls_consumed + 1,
            duration_consumed_seconds=usage_periods.c.duration_consumed_seconds + event.duration_seconds,
        )
    )

    verify_period_integrity(session, period_id)
    updated = get_period(session, period_id)
    usage_events_total.inc(labels={"outcome": ApplyOutcome.APPLIED.value})
    log_event(
        "info",
        "usage.event_applied",
        tenant_id=event.tenant_id,
        event_type="usage.applied",
        extra={
            "period_id": period_id,
            "event_id": event.event_id,
            "calls_consumed": updated.calls_consumed,
            "duration_consumed_seconds": updated.duration_consumed_seconds,
        },
    )
    return ApplyResult(outcome=ApplyOutcome.APPLIED, applied=True, period=updated)


def apply_event(period_id: int, event: UsageEvent, timeout: Optional[float] = None) -> ApplyResult:
    """Apply an event in its own transaction under the tenant lock."""
    with tenant_lock(event.tenant_id, timeout):
        try:
            with get_db_session() as session:
                lock_tenant_row(session, event.tenant_id)
                return apply_event_in_session(session, period_id, event)
        except InvariantViolationError as exc:
            freeze_tenant(event.tenant_id, exc.message)
            raise


def verify_period_integrity(session, period_id: int) -> None:
    """Counters must equal count/sum of the applied events (unpruned periods)."""
    period = get_period(session, period_id)
    if period is None:
        raise NotFoundError(f"Usage period {period_id} not found")
    if period.event_ids_pruned_at is not None:
        return

    count, total = session.execute(
        select(
            func.count(usage_period_events.c.id),
            func.coalesce(func.sum(usage_period_events.c.duration_seconds), 0),
        ).where(usage_period_events.c.period_id == period_id)
    ).one()

    if count != period.calls_consumed or int(total) != period.duration_consumed_seconds:
        invariant_violations_total.inc()
        log_event(
            "error",
            "usage.invariant_violation",
            tenant_id=period.tenant_id,
            event_type="usage.invariant_violation",
            error_code="invariant_violation",
            extra={
                "period_id": period_id,
                "calls_consumed": period.calls_consumed,
                "events_count": count,
                "duration_consumed_seconds": period.duration_consumed_seconds,
                "events_duration_seconds": total,
            },
        )
        raise InvariantViolationError(
            f"Usage period {period_id} counters disagree with applied events "
            f"(calls {period.calls_consumed} != {count}, seconds {period.duration_consumed_seconds} != {total})",
            tenant_id=period.tenant_id,
        )


def freeze_tenant(tenant_id: str, reason: str) -> bool:
    """
    Quarantine a tenant's usage after an invariant violation.

    Runs in its own transaction so it survives the rollback of the failed
    write. Returns True when this call froze the tenant.
    """
    with get_db_session() as session:
        result = session.execute(
            update(tenants)
            .where(and_(tenants.c.tenant_id == tenant_id, tenants.c.usage_frozen == False))  # noqa: E712
            .values(usage_frozen=True, frozen_reason=reason[:1000])
        )
        frozen = result.rowcount > 0
    if frozen:
        log_event(
            "error",
            "usage.tenant_frozen",
            tenant_id=tenant_id,
            event_type="usage.tenant_frozen",
            error_code="invariant_violation",
            extra={"reason": reason},
        )
    return frozen


def archive_period(session, period_id: int, reason: str, now: Optional[datetime] = None) -> UsagePeriod:
    """Close a period. Archiving an archived period is a no-op."""
    now = _utc_now(now)
    result = session.execute(
        update(usage_periods)
        .where(and_(usage_periods.c.id == period_id, usage_periods.c.status == PeriodStatus.OPEN.value))
        .values(status=PeriodStatus.ARCHIVED.value, archived_at=now, archive_reason=reason)
    )
    period = get_period(session, period_id)
    if period is None:
        raise NotFoundError(f"Usage period {period_id} not found")
    if result.rowcount:
        log_event(
            "info",
            "usage.period_archived",
            tenant_id=period.tenant_id,
            event_type="usage.period_archived",
            extra={"period_id": period_id, "reason": reason},
        )
    return period


def archive_and_reset(
    session,
    tenant_id: str,
    reason: str,
    now: Optional[datetime] = None,
    new_end: Optional[datetime] = None,
) -> UsagePeriod:
    """Archive the open period (if any) and open a fresh zero-counter one."""
    now = _utc_now(now)
    end = as_utc(new_end) if new_end else now + timedelta(days=settings.BILLING_PERIOD_DAYS)
    current = get_open_period(session, tenant_id)
    if current is not None:
        archive_period(session, current.period_id, reason, now)
    return open_period(session, tenant_id, now, end)


def prune_cutoff(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> datetime:
    days = settings.USAGE_EVENT_RETENTION_DAYS if retention_days is None else retention_days
    return _utc_now(now) - timedelta(days=days)


def _prunable_periods(cutoff: datetime):
    """Archived before `cutoff` and not pruned yet. Open periods never match."""
    return and_(
        usage_periods.c.status == PeriodStatus.ARCHIVED.value,
        usage_periods.c.archived_at < cutoff,
        usage_periods.c.event_ids_pruned_at.is_(None),
    )


def count_prunable_periods(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
    cutoff = prune_cutoff(now, retention_days)
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(usage_periods).where(_prunable_periods(cutoff))
        ).scalar() or 0


def prune_applied_events(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> Dict[str, int]:
    """
    Drop applied event ids of periods archived before the retention cutoff.

    Open periods are never pruned. Returns counts of pruned periods and rows.
    """
    now = _utc_now(now)
    cutoff = prune_cutoff(now, retention_days)

    with get_db_session() as session:
        period_ids = session.execute(
            select(usage_periods.c.id).where(_prunable_periods(cutoff))
        ).scalars().all()

        if not period_ids:
            return {"periods": 0, "events": 0}

        deleted = session.execute(
            delete(usage_period_events).where(usage_period_events.c.period_id.in_(period_ids))
        ).rowcount
        session.execute(
            update(usage_periods)
            .where(usage_periods.c.id.in_(period_ids))
            .values(event_ids_pruned_at=now)
        )

    logger.info(
        "usage.events_pruned",
        extra={"periods": len(period_ids), "events": deleted, "cutoff": cutoff.isoformat()},
    )
    return {"periods": len(period_ids), "events": deleted}
