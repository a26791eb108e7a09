"""Retention job for applied usage event ids of archived periods."""
from datetime import datetime
import logging

from trialmeter.core.config import settings
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.features.usage.ledger import count_prunable_periods, prune_applied_events

logger = logging.getLogger("trialmeter.workers.prune")


def prune_usage_event_ids(
    *,
    retention_days: int | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> dict:
    days = retention_days if retention_days is not None else settings.USAGE_EVENT_RETENTION_DAYS
    now = as_utc(normalize_now(now))

    if dry_run:
        candidates = count_prunable_periods(now=now, retention_days=days)
        pruned = {"periods": 0, "events": 0}
    else:
        pruned = prune_applied_events(now=now, retention_days=days)
        candidates = pruned["periods"]

    summary = {
        "retention_days": days,
        "dry_run": dry_run,
        "candidates": candidates,
        "pruned_periods": pruned["periods"],
        "deleted_events": pruned["events"],
    }
    logger.info("[prune] usage event id retention", extra=summary)
    return summary


if __name__ == "__main__":
    result = prune_usage_event_ids()
    print(result)
