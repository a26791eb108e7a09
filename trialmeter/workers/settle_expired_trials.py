"""
Scheduled sweep for trials past their end date.

Finds trialing/blocked tenants whose trial_period_end has passed and that
have not been settled yet, and runs the period-end settlement for each.
Settlement stamps `trial_settled_at`, so a tenant leaves the queue once it
is converted or blocked for good; only transient billing failures and
per-tenant errors bring it back on the next run. A tenant that was already
blocked on a limit is counted as `already_blocked`, not `blocked`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict
import logging

from sqlalchemy import and_, select

from trialmeter.core.database import get_db_session, tenants
from trialmeter.core.errors import AppError
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.features.billing.provider import BillingProviderError
from trialmeter.features.trial.service import handle_trial_period_end
from trialmeter.models.tenant import SubscriptionStatus
from trialmeter.models.trial import ConversionErrorKind

logger = logging.getLogger("trialmeter.workers.settle")


def run_settle_job(now: datetime | None = None, limit: int = 100) -> Dict[str, Any]:
    now = as_utc(normalize_now(now))

    with get_db_session() as session:
        due = session.execute(
            select(tenants.c.tenant_id, tenants.c.subscription_status)
            .where(
                and_(
                    tenants.c.subscription_status.in_(
                        [SubscriptionStatus.TRIALING.value, SubscriptionStatus.BLOCKED.value]
                    ),
                    tenants.c.trial_period_end <= now,
                    tenants.c.trial_settled_at.is_(None),
                )
            )
            .order_by(tenants.c.trial_period_end, tenants.c.tenant_id)
            .limit(limit)
        ).all()

    stats = {"due": len(due), "converted": 0, "blocked": 0, "already_blocked": 0, "retry": 0, "failed": 0}
    for tenant_id, status in due:
        try:
            result = handle_trial_period_end(tenant_id, now=now)
        except (AppError, BillingProviderError) as e:
            stats["failed"] += 1
            logger.error("[settle] tenant failed", extra={"tenant_id": tenant_id, "error": str(e)})
            continue
        if result.success:
            stats["converted"] += 1
        elif result.error_kind == ConversionErrorKind.RETRYABLE:
            stats["retry"] += 1
        elif result.error_kind == ConversionErrorKind.CONFLICT:
            stats["failed"] += 1
        elif status == SubscriptionStatus.BLOCKED.value:
            stats["already_blocked"] += 1
        else:
            stats["blocked"] += 1

    logger.info("[settle] expired trials", extra=stats)
    return {**stats, "timestamp": now.isoformat()}


if __name__ == "__main__":
    print(run_settle_job())
