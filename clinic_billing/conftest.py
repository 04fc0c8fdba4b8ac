# clinic_billing/conftest.py
import os
import pytest

from clinic_billing.tests.mocks import FakeProvider, WEBHOOK_SECRET


@pytest.fixture(scope="session")
def db_url():
    """
    Database URL for tests.

    TEST_DATABASE_URL when set (e.g. a disposable Postgres), otherwise an
    in-memory SQLite database.
    """
    return os.getenv("TEST_DATABASE_URL") or "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_url):
    """Fresh tables for every test."""
    from clinic_billing.core.database import init_engine, create_all_tables, drop_all_tables, dispose_engine

    init_engine(db_url)
    create_all_tables()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def billing_env(monkeypatch):
    """Billing configuration shared by tests; individual tests override it."""
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_ID", "price_pro_monthly")
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("BILLING_STRICT_ORDERING", raising=False)
    yield


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def store():
    from clinic_billing.features.billing.store import EntitlementStore

    return EntitlementStore()


@pytest.fixture
def client(fake_provider):
    """TestClient with the billing provider replaced by the in-memory fake."""
    from fastapi.testclient import TestClient
    from clinic_billing.main import app
    from clinic_billing.features.billing.service import get_provider

    app.dependency_overrides[get_provider] = lambda: fake_provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
