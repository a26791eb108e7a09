"""
Per-tenant serialization.

Every mutation of a tenant's usage period or subscription status runs inside
`tenant_lock(tenant_id)`. In-process the lock is a ref-counted
`threading.Lock` keyed by tenant id; across processes the caller also takes
`SELECT ... FOR UPDATE` on the tenant row (see `lock_tenant_row`).

Different tenants never contend.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from sqlalchemy import select

from trialmeter.core.config import settings
from trialmeter.core.database import tenants
from trialmeter.core.errors import LockTimeoutError, NotFoundError
from trialmeter.core.metrics import tenant_lock_timeouts_total, tenant_locks_held

logger = logging.getLogger("trialmeter")


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class TenantLockRegistry:
    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, tenant_id: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(tenant_id)
            if entry is None:
                entry = _Entry()
                self._entries[tenant_id] = entry
            entry.refs += 1
            return entry

    def _release(self, tenant_id: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                self._entries.pop(tenant_id, None)
            tenant_locks_held.set(len(self._entries))

    @contextmanager
    def hold(self, tenant_id: str, timeout: Optional[float] = None):
        wait = settings.TENANT_LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        entry = self._checkout(tenant_id)
        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=wait)
            if not acquired:
                tenant_lock_timeouts_total.inc()
                logger.warning("tenant.lock_timeout", extra={"tenant_id": tenant_id, "timeout_s": wait})
                raise LockTimeoutError(f"Tenant {tenant_id} is busy, retry later")
            yield
        finally:
            if acquired:
                entry.lock.release()
            self._release(tenant_id, entry)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)

    def reset(self) -> None:
        with self._guard:
            self._entries.clear()


_registry = TenantLockRegistry()


def get_lock_registry() -> TenantLockRegistry:
    return _registry


@contextmanager
def tenant_lock(tenant_id: str, timeout: Optional[float] = None):
    """Serialize work for one tenant. Raises LockTimeoutError (retryable)."""
    with _registry.hold(tenant_id, timeout):
        yield


def lock_tenant_row(session, tenant_id: str):
    """Row-lock the tenant inside the current transaction and return the row.

    Raises NotFoundError for unknown tenants. SQLite ignores FOR UPDATE.
    """
    row = session.execute(
        select(tenants).where(tenants.c.tenant_id == tenant_id).with_for_update()
    ).mappings().first()
    if row is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return row
