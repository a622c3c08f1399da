# backoffice/conftest.py
import pytest
from sqlalchemy import delete

from backoffice.core.config import settings
from backoffice.core.database import (
    create_all_tables,
    dispose_engine,
    get_engine,
    init_engine,
    metadata,
)
from backoffice.core.metrics import METRICS
from backoffice.tests.mocks import TEST_ADMIN_KEY, TEST_JWT_SECRET


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """
    Create all tables in an in-memory SQLite database once per session.

    Set TEST_DATABASE_URL to run against another database instead.
    """
    init_engine(None if settings.TEST_DATABASE_URL else "sqlite://")
    create_all_tables()
    yield
    dispose_engine()


def _truncate_all() -> None:
    with get_engine().begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(delete(table))


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table before each test to keep tests independent."""
    _truncate_all()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_state(monkeypatch):
    """Known settings, fresh metrics and no cached service wiring per test."""
    from backoffice.api.deps import set_services

    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", True)
    METRICS.reset()
    set_services(None)
    yield
    set_services(None)


@pytest.fixture
def clock():
    from backoffice.tests.mocks import FrozenClock

    return FrozenClock()


@pytest.fixture
def gateway():
    from backoffice.tests.mocks import FakeGateway

    return FakeGateway()


@pytest.fixture
def notifier():
    from backoffice.tests.mocks import RecordingNotifier

    return RecordingNotifier()


@pytest.fixture
def services(gateway, clock, notifier):
    """Fully wired billing core on the test database, seeded with default plans."""
    from backoffice.api.deps import build_services, set_services
    from backoffice.features.usage.service import SqlUsageEventLog, UsageMeter

    built = build_services(
        gateways={gateway.name: gateway},
        notifier=notifier,
        usage=UsageMeter(SqlUsageEventLog(), clock=clock),
        lifecycle_kwargs={"clock": clock},
    )
    built.catalog.seed_plans()
    set_services(built)
    return built


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient
    from backoffice.main import app

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY}
