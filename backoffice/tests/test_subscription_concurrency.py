"""
Test concurrency guarantees: one open subscription per user, optimistic
versioning and exactly-once application under parallel deliveries.

Threaded tests run against a file-backed SQLite database so that each
thread gets its own connection.
"""
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from backoffice.core.config import settings
from backoffice.core.database import create_all_tables, dispose_engine, init_engine
from backoffice.features.subscriptions.repository import (
    AlreadyAppliedError,
    ConcurrentModificationError,
    DuplicateTransactionError,
    SlotTakenError,
)
from backoffice.features.subscriptions.sql_repository import SqlUnitOfWork
from backoffice.models.subscription import ACTIVE, EXPIRED, PENDING_PAYMENT, Subscription
from backoffice.models.transaction import SUCCESSFUL
from backoffice.tests.mocks import FakeGateway, FrozenClock, RecordingNotifier, charge_event, signed


def _subscription(clock, user_id="user_ama", status=PENDING_PAYMENT):
    now = clock()
    return Subscription(
        id=str(uuid.uuid4()),
        user_id=user_id,
        plan_id="professional",
        billing_period="monthly",
        status=status,
        unit_price=Decimal("90"),
        currency="GHS",
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def file_database(tmp_path):
    dispose_engine()
    init_engine(f"sqlite:///{tmp_path / 'concurrency.db'}")
    create_all_tables()
    yield
    dispose_engine()
    init_engine(None if settings.TEST_DATABASE_URL else "sqlite://")
    create_all_tables()


@pytest.fixture
def threaded_services(file_database):
    from backoffice.api.deps import build_services

    gateway = FakeGateway()
    built = build_services(
        gateways={gateway.name: gateway},
        notifier=RecordingNotifier(),
        lifecycle_kwargs={"clock": FrozenClock()},
    )
    built.catalog.seed_plans()
    return built


def test_stale_version_is_rejected(services, clock):
    created = _subscription(clock)
    with SqlUnitOfWork() as uow:
        uow.subscriptions.insert(created)

    with SqlUnitOfWork() as uow:
        uow.subscriptions.transition(created, [PENDING_PAYMENT], status=ACTIVE)

    with pytest.raises(ConcurrentModificationError):
        with SqlUnitOfWork() as uow:
            uow.subscriptions.transition(created, [ACTIVE], status=EXPIRED)

    with SqlUnitOfWork() as uow:
        current = uow.subscriptions.get(created.id)
    assert (current.status, current.version) == (ACTIVE, 2)


def test_transition_from_wrong_status_is_rejected(services, clock):
    created = _subscription(clock)
    with SqlUnitOfWork() as uow:
        uow.subscriptions.insert(created)

    with pytest.raises(ConcurrentModificationError):
        with SqlUnitOfWork() as uow:
            uow.subscriptions.transition(created, [ACTIVE], status=EXPIRED)


def test_store_enforces_one_open_subscription(services, clock):
    with SqlUnitOfWork() as uow:
        uow.subscriptions.insert(_subscription(clock))

    with pytest.raises(SlotTakenError):
        with SqlUnitOfWork() as uow:
            uow.subscriptions.insert(_subscription(clock))

    # Closed subscriptions do not occupy the slot
    with SqlUnitOfWork() as uow:
        uow.subscriptions.insert(_subscription(clock, status=EXPIRED))
        assert len(uow.subscriptions.list_for_user("user_ama")) == 2


def test_failed_unit_of_work_rolls_back(services, clock):
    first = _subscription(clock, user_id="user_kofi")

    with pytest.raises(SlotTakenError):
        with SqlUnitOfWork() as uow:
            uow.subscriptions.insert(first)
            uow.subscriptions.insert(_subscription(clock, user_id="user_kofi"))

    with SqlUnitOfWork() as uow:
        assert uow.subscriptions.get(first.id) is None


def test_application_and_provider_id_recorded_once(services, lifecycle, clock):
    checkout = lifecycle.create_subscription("user_ama", "professional", "monthly")
    txn = checkout.transaction

    with SqlUnitOfWork() as uow:
        uow.record_application(txn.id, checkout.subscription.id, "applied", clock())
    with pytest.raises(AlreadyAppliedError):
        with SqlUnitOfWork() as uow:
            uow.record_application(txn.id, checkout.subscription.id, "applied", clock())

    paid = txn.model_copy(update={"id": str(uuid.uuid4()), "provider_transaction_id": "fw-dup", "status": SUCCESSFUL})
    with SqlUnitOfWork() as uow:
        uow.transactions.insert(paid)
    with pytest.raises(DuplicateTransactionError):
        with SqlUnitOfWork() as uow:
            uow.transactions.insert(paid.model_copy(update={"id": str(uuid.uuid4())}))


def test_parallel_creates_yield_one_subscription(threaded_services):
    lifecycle = threaded_services.lifecycle

    def create(_):
        return lifecycle.create_subscription("user_ama", "professional", "monthly")

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(create, range(5)))

    assert len({r.subscription.id for r in results}) == 1
    assert all(r.payment_link for r in results)
    [subscription] = lifecycle.list_subscriptions("user_ama")
    assert subscription.status == PENDING_PAYMENT


def test_parallel_webhook_deliveries_apply_once(threaded_services):
    lifecycle = threaded_services.lifecycle
    checkout = lifecycle.create_subscription("user_ama", "professional", "monthly")
    body = charge_event("fw-race", checkout.payment_reference)

    def deliver(_):
        return threaded_services.reconciler.handle_webhook(signed(), body)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(deliver, range(6)))

    assert [r.outcome for r in results].count("applied") == 1
    assert {r.transaction_id for r in results} == {checkout.transaction.id}

    subscription = lifecycle.get_subscription(checkout.subscription.id)
    assert subscription.status == ACTIVE
    assert subscription.version == 2
    assert subscription.current_period_end - subscription.current_period_start <= timedelta(days=31)
    assert [t.status for t in lifecycle.list_transactions("user_ama")] == [SUCCESSFUL]
