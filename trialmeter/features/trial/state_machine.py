"""
trialmeter/features/trial/state_machine.py

Trial / subscription state machine.

    trialing --limit_exceeded|trial_expired--> blocked
    trialing|blocked --convert_now|auto_convert--> active
    trialing|blocked --cancel|billing_canceled--> canceled

A request whose target equals the current status is an idempotent no-op.
Anything else is reported as a conflict (not raised). Applied transitions are
written to `trial_transitions`.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple
import logging

from sqlalchemy import insert, update

from trialmeter.core.database import tenants, trial_transitions
from trialmeter.core.errors import ConflictError, ValidationError
from trialmeter.core.locks import lock_tenant_row
from trialmeter.core.metrics import trial_transitions_total
from trialmeter.core.timeutil import as_utc, normalize_now
from trialmeter.models.tenant import BlockReason, SubscriptionStatus
from trialmeter.models.trial import TransitionResult, Trigger


logger = logging.getLogger("trialmeter")

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[Tuple[SubscriptionStatus, SubscriptionStatus], FrozenSet[Trigger]] = {
    (S.TRIALING, S.BLOCKED): frozenset({Trigger.LIMIT_EXCEEDED, Trigger.TRIAL_EXPIRED}),
    (S.TRIALING, S.ACTIVE): frozenset({Trigger.CONVERT_NOW, Trigger.AUTO_CONVERT}),
    (S.BLOCKED, S.ACTIVE): frozenset({Trigger.CONVERT_NOW, Trigger.AUTO_CONVERT}),
    (S.TRIALING, S.CANCELED): frozenset({Trigger.CANCEL, Trigger.BILLING_CANCELED}),
    (S.BLOCKED, S.CANCELED): frozenset({Trigger.CANCEL, Trigger.BILLING_CANCELED}),
}


def is_allowed(from_status: SubscriptionStatus, to_status: SubscriptionStatus, trigger: Trigger) -> bool:
    return trigger in ALLOWED_TRANSITIONS.get((from_status, to_status), frozenset())


def transition(
    session,
    tenant_id: str,
    to_status: SubscriptionStatus,
    trigger: Trigger,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> TransitionResult:
    """
    Move a tenant to `to_status` inside the caller's transaction.

    `reason` is required when blocking (`calls`, `duration` or
    `trial_expired`). The caller holds the tenant lock.
    """
    now = as_utc(normalize_now(now))
    to_status = SubscriptionStatus(to_status)
    trigger = Trigger(trigger)

    row = lock_tenant_row(session, tenant_id)
    current = SubscriptionStatus(row["subscription_status"])

    if current == to_status:
        return TransitionResult(
            tenant_id=tenant_id,
            from_status=current,
            to_status=to_status,
            trigger=trigger,
            applied=False,
            noop=True,
            reason=reason,
        )

    if not is_allowed(current, to_status, trigger):
        logger.warning(
            "trial.transition_rejected",
            extra={
                "tenant_id": tenant_id,
                "from_status": current.value,
                "to_status": to_status.value,
                "trigger": trigger.value,
            },
        )
        return TransitionResult(
            tenant_id=tenant_id,
            from_status=current,
            to_status=to_status,
            trigger=trigger,
            applied=False,
            conflict=True,
            reason=f"{current.value} -> {to_status.value} is not allowed for {trigger.value}",
        )

    values = {"subscription_status": to_status.value, "updated_at": now}
    if to_status == S.BLOCKED:
        try:
            values["block_reason"] = BlockReason(reason).value
        except ValueError as exc:
            raise ValidationError(f"Invalid block reason: {reason!r}") from exc
        values["blocked_at"] = now
    elif to_status == S.ACTIVE:
        values["converted_at"] = now
        values["block_reason"] = None
    elif to_status == S.CANCELED:
        values["canceled_at"] = now

    session.execute(update(tenants).where(tenants.c.tenant_id == tenant_id).values(**values))
    session.execute(
        insert(trial_transitions).values(
            tenant_id=tenant_id,
            from_status=current.value,
            to_status=to_status.value,
            trigger=trigger.value,
            reason=reason,
            created_at=now,
        )
    )

    trial_transitions_total.inc(labels={"from_status": current.value, "to_status": to_status.value})
    logger.info(
        "trial.transition_applied",
        extra={
            "tenant_id": tenant_id,
            "from_status": current.value,
            "to_status": to_status.value,
            "trigger": trigger.value,
        },
    )
    return TransitionResult(
        tenant_id=tenant_id,
        from_status=current,
        to_status=to_status,
        trigger=trigger,
        applied=True,
        reason=reason,
    )


def require_applied(result: TransitionResult) -> TransitionResult:
    """Surface a conflict result as ConflictError; pass anything else through."""
    if result.conflict:
        raise ConflictError(result.reason or "Illegal trial transition")
    return result
