"""
SQLAlchemy Core implementation of the subscription and ledger repositories.

Atomicity comes from the store: the partial unique index on open
subscriptions, the unique provider_transaction_id, the primary key on
transaction_applications and conditional UPDATEs keyed on version.
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.database import (
    get_session_factory,
    subscriptions,
    transaction_applications,
    transactions,
)
from backoffice.features.subscriptions.repository import (
    AlreadyAppliedError,
    ConcurrentModificationError,
    DuplicateTransactionError,
    SlotTakenError,
)
from backoffice.models.billing import ensure_utc, utc_now
from backoffice.models.subscription import CANCELLED, OPEN_STATUSES, Subscription
from backoffice.models.transaction import PENDING, SUCCESSFUL, Transaction

_SUBSCRIPTION_DATETIMES = (
    "current_period_start",
    "current_period_end",
    "trial_end",
    "grace_until",
    "cancelled_at",
    "created_at",
    "updated_at",
)


def _row_to_subscription(row) -> Subscription:
    data = dict(row._mapping)
    for key in _SUBSCRIPTION_DATETIMES:
        data[key] = ensure_utc(data.get(key))
    data["cancel_at_period_end"] = bool(data.get("cancel_at_period_end"))
    data["unit_price"] = Decimal(str(data["unit_price"]))
    return Subscription(**data)


def _row_to_transaction(row) -> Transaction:
    data = dict(row._mapping)
    data["created_at"] = ensure_utc(data["created_at"])
    data["resolved_at"] = ensure_utc(data.get("resolved_at"))
    data["amount"] = Decimal(str(data["amount"]))
    data["metadata"] = data.get("metadata") or {}
    return Transaction(**data)


class SqlSubscriptionRepository:
    def __init__(self, session: Session):
        self.session = session

    def insert(self, subscription: Subscription) -> Subscription:
        try:
            self.session.execute(insert(subscriptions).values(**subscription.model_dump()))
        except IntegrityError as e:
            raise SlotTakenError("User already has an open subscription") from e
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        row = self.session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        return _row_to_subscription(row) if row else None

    def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        row = self.session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status.in_(OPEN_STATUSES))
        ).first()
        return _row_to_subscription(row) if row else None

    def list_for_user(self, user_id: str) -> List[Subscription]:
        rows = self.session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.created_at.desc())
        ).all()
        return [_row_to_subscription(r) for r in rows]

    def transition(self, subscription: Subscription, from_statuses: Iterable[str], **changes) -> Subscription:
        changes.setdefault("updated_at", utc_now())
        stmt = (
            update(subscriptions)
            .where(subscriptions.c.id == subscription.id)
            .where(subscriptions.c.version == subscription.version)
            .where(subscriptions.c.status.in_(list(from_statuses)))
            .values(version=subscription.version + 1, **changes)
        )
        try:
            result = self.session.execute(stmt)
        except IntegrityError as e:
            raise SlotTakenError("User already has an open subscription") from e
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Subscription {subscription.id} was modified concurrently"
            )
        return self.get(subscription.id)

    def find(
        self,
        statuses: Iterable[str],
        *,
        period_end_before: Optional[datetime] = None,
        period_end_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        grace_before: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        limit: int = 500,
    ) -> List[Subscription]:
        stmt = select(subscriptions).where(subscriptions.c.status.in_(list(statuses)))
        if period_end_before is not None:
            stmt = stmt.where(subscriptions.c.current_period_end <= period_end_before)
        if period_end_after is not None:
            stmt = stmt.where(subscriptions.c.current_period_end > period_end_after)
        if created_before is not None:
            stmt = stmt.where(subscriptions.c.created_at <= created_before)
        if grace_before is not None:
            stmt = stmt.where(subscriptions.c.grace_until <= grace_before)
        if cancel_at_period_end is not None:
            stmt = stmt.where(subscriptions.c.cancel_at_period_end == cancel_at_period_end)
        stmt = stmt.order_by(subscriptions.c.created_at.asc()).limit(limit)
        return [_row_to_subscription(r) for r in self.session.execute(stmt).all()]

    def count_by_status(self) -> Dict[str, int]:
        rows = self.session.execute(
            select(subscriptions.c.status, func.count()).group_by(subscriptions.c.status)
        ).all()
        return {status: int(count) for status, count in rows}

    def plan_distribution(self, statuses: Iterable[str]) -> Dict[str, int]:
        rows = self.session.execute(
            select(subscriptions.c.plan_id, func.count())
            .where(subscriptions.c.status.in_(list(statuses)))
            .group_by(subscriptions.c.plan_id)
        ).all()
        return {plan_id: int(count) for plan_id, count in rows}

    def cancellations_since(self, since: datetime) -> List[Tuple[Optional[str], str, int]]:
        """(cancellation_reason, plan_id, count) for subscriptions cancelled at or after since."""
        rows = self.session.execute(
            select(subscriptions.c.cancellation_reason, subscriptions.c.plan_id, func.count())
            .where(subscriptions.c.status == CANCELLED)
            .where(subscriptions.c.cancelled_at >= since)
            .group_by(subscriptions.c.cancellation_reason, subscriptions.c.plan_id)
        ).all()
        return [(reason, plan_id, int(count)) for reason, plan_id, count in rows]


class SqlTransactionRepository:
    def __init__(self, session: Session):
        self.session = session

    def insert(self, transaction: Transaction) -> Transaction:
        try:
            self.session.execute(insert(transactions).values(**transaction.model_dump()))
        except IntegrityError as e:
            raise DuplicateTransactionError(
                f"Provider transaction {transaction.provider_transaction_id} already recorded"
            ) from e
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        row = self.session.execute(
            select(transactions).where(transactions.c.id == transaction_id)
        ).first()
        return _row_to_transaction(row) if row else None

    def get_by_provider_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        row = self.session.execute(
            select(transactions).where(transactions.c.provider_transaction_id == provider_transaction_id)
        ).first()
        return _row_to_transaction(row) if row else None

    def list_by_reference(self, reference: str) -> List[Transaction]:
        rows = self.session.execute(
            select(transactions)
            .where(transactions.c.reference == reference)
            .order_by(transactions.c.created_at.asc())
        ).all()
        return [_row_to_transaction(r) for r in rows]

    def find_pending_for_subscription(self, subscription_id: str, transaction_type: str) -> Optional[Transaction]:
        row = self.session.execute(
            select(transactions)
            .where(transactions.c.subscription_id == subscription_id)
            .where(transactions.c.type == transaction_type)
            .where(transactions.c.status == PENDING)
            .order_by(transactions.c.created_at.desc())
            .limit(1)
        ).first()
        return _row_to_transaction(row) if row else None

    def resolve(
        self,
        transaction_id: str,
        *,
        status: str,
        resolved_at: datetime,
        provider_transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        values = {"status": status, "resolved_at": resolved_at, "failure_reason": failure_reason}
        if provider_transaction_id is not None:
            values["provider_transaction_id"] = provider_transaction_id
        try:
            result = self.session.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .where(transactions.c.status == PENDING)
                .values(**values)
            )
        except IntegrityError as e:
            raise DuplicateTransactionError(
                f"Provider transaction {provider_transaction_id} already recorded"
            ) from e
        return result.rowcount == 1

    def attach_subscription(self, transaction_id: str, subscription_id: str) -> None:
        self.session.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id)
            .where(transactions.c.subscription_id.is_(None))
            .values(subscription_id=subscription_id)
        )

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Transaction]:
        rows = self.session.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.created_at.desc())
            .limit(limit)
        ).all()
        return [_row_to_transaction(r) for r in rows]

    def list_stale_pending(self, created_before: datetime, limit: int = 500) -> List[Transaction]:
        rows = self.session.execute(
            select(transactions)
            .where(transactions.c.status == PENDING)
            .where(transactions.c.created_at <= created_before)
            .order_by(transactions.c.created_at.asc())
            .limit(limit)
        ).all()
        return [_row_to_transaction(r) for r in rows]

    def revenue_by_currency(self) -> Dict[str, Decimal]:
        rows = self.session.execute(
            select(transactions.c.currency, func.sum(transactions.c.amount))
            .where(transactions.c.status == SUCCESSFUL)
            .group_by(transactions.c.currency)
        ).all()
        return {currency: Decimal(str(total or 0)) for currency, total in rows}

    def outcomes_since(self, since: datetime, exclude_providers: Iterable[str] = ()) -> List[Tuple[str, Optional[str], int]]:
        """(status, failure_reason, count) for ledger rows created at or after since."""
        stmt = (
            select(transactions.c.status, transactions.c.failure_reason, func.count())
            .where(transactions.c.created_at >= since)
            .group_by(transactions.c.status, transactions.c.failure_reason)
        )
        excluded = list(exclude_providers)
        if excluded:
            stmt = stmt.where(transactions.c.provider.not_in(excluded))
        return [(status, reason, int(count)) for status, reason, count in self.session.execute(stmt).all()]


class SqlUnitOfWork:
    """
    One database transaction spanning both repositories.

    Usage:
        with SqlUnitOfWork() as uow:
            uow.subscriptions.transition(...)
            uow.record_application(...)
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory
        self.session: Optional[Session] = None

    def __enter__(self) -> "SqlUnitOfWork":
        factory = self._session_factory or get_session_factory()
        self.session = factory()
        self.subscriptions = SqlSubscriptionRepository(self.session)
        self.transactions = SqlTransactionRepository(self.session)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.session.commit()
            else:
                self.session.rollback()
        finally:
            self.session.close()

    def is_applied(self, transaction_id: str) -> bool:
        row = self.session.execute(
            select(transaction_applications.c.transaction_id)
            .where(transaction_applications.c.transaction_id == transaction_id)
        ).first()
        return row is not None

    def record_application(self, transaction_id: str, subscription_id: Optional[str], outcome: str, applied_at: datetime) -> None:
        try:
            self.session.execute(
                insert(transaction_applications).values(
                    transaction_id=transaction_id,
                    subscription_id=subscription_id,
                    outcome=outcome,
                    applied_at=applied_at,
                )
            )
        except IntegrityError as e:
            raise AlreadyAppliedError(f"Transaction {transaction_id} already applied") from e


def sql_unit_of_work_factory(session_factory: Optional[Callable[[], Session]] = None) -> Callable[[], SqlUnitOfWork]:
    return lambda: SqlUnitOfWork(session_factory)
