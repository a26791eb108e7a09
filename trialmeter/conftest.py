# trialmeter/conftest.py
import os
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch


@pytest.fixture(scope="session")
def db_url():
    """
    External DATABASE_URL for tests, if any.

    Tests run against a per-test SQLite file unless TEST_DATABASE_URL points
    somewhere else.
    """
    return os.getenv("TEST_DATABASE_URL")


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_url, tmp_path):
    """
    Fresh schema for every test.

    SQLite files live under tmp_path so tests never share state.
    """
    from trialmeter.core.database import create_all_tables, dispose_engine, drop_all_tables, init_engine

    init_engine(db_url or f"sqlite:///{tmp_path}/trialmeter_test.db")
    if db_url:
        drop_all_tables()
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def billing_disabled_by_default(monkeypatch):
    """Tests opt into billing explicitly (mock_provider or setenv)."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Metrics, the active variant table and tenant locks are process globals."""
    from trialmeter.core.locks import get_lock_registry
    from trialmeter.core.metrics import METRICS
    from trialmeter.features.variants.service import builtin_variant_table, install_variant_table, reset_variant_table

    METRICS.reset()
    get_lock_registry().reset()
    install_variant_table(builtin_variant_table())
    yield
    reset_variant_table()
    get_lock_registry().reset()


@pytest.fixture
def now():
    """Fixed clock for deterministic trial windows."""
    return datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_provider():
    """
    Billing provider stand-in.

    Patched where the trial and billing services look it up, so
    convert/cancel/period-end and webhooks all see the same mock.
    """
    from trialmeter.features.billing.provider import BillingProvider

    provider = Mock(spec=BillingProvider)
    with patch("trialmeter.features.billing.service.get_provider", return_value=provider):
        yield provider
