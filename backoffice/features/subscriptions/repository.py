"""
Storage interfaces for subscriptions and the transaction ledger.

Any store offering atomic conditional updates and a uniqueness constraint
can implement these. A UnitOfWork groups repository calls into one atomic
database transaction: it commits on clean exit and rolls back otherwise.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from backoffice.core.errors import ConflictError
from backoffice.models.subscription import Subscription
from backoffice.models.transaction import Transaction


class SlotTakenError(ConflictError):
    """The user already holds an open subscription."""


class ConcurrentModificationError(ConflictError):
    """A conditional update matched no row: version or status moved on."""


class DuplicateTransactionError(ConflictError):
    """provider_transaction_id already recorded."""


class AlreadyAppliedError(ConflictError):
    """The transaction's effects were already applied to a subscription."""


class SubscriptionRepository(Protocol):
    def insert(self, subscription: Subscription) -> Subscription:
        """Raises SlotTakenError when the user already holds an open subscription."""
        ...

    def get(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def list_for_user(self, user_id: str) -> List[Subscription]:
        ...

    def transition(self, subscription: Subscription, from_statuses: Iterable[str], **changes) -> Subscription:
        """
        Conditionally update on (id, version, status in from_statuses) and bump version.

        Raises:
            ConcurrentModificationError: the row no longer matches
            SlotTakenError: the change would open a second subscription for the user
        """
        ...

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
        ...

    def count_by_status(self) -> Dict[str, int]:
        ...

    def plan_distribution(self, statuses: Iterable[str]) -> Dict[str, int]:
        ...

    def cancellations_since(self, since: datetime) -> List[Tuple[Optional[str], str, int]]:
        ...


class TransactionRepository(Protocol):
    def insert(self, transaction: Transaction) -> Transaction:
        """Raises DuplicateTransactionError on a repeated provider_transaction_id."""
        ...

    def get(self, transaction_id: str) -> Optional[Transaction]:
        ...

    def get_by_provider_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        ...

    def list_by_reference(self, reference: str) -> List[Transaction]:
        ...

    def find_pending_for_subscription(self, subscription_id: str, transaction_type: str) -> Optional[Transaction]:
        ...

    def resolve(
        self,
        transaction_id: str,
        *,
        status: str,
        resolved_at: datetime,
        provider_transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        """Move a pending row to a terminal status. False if it was already resolved."""
        ...

    def attach_subscription(self, transaction_id: str, subscription_id: str) -> None:
        ...

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Transaction]:
        ...

    def list_stale_pending(self, created_before: datetime, limit: int = 500) -> List[Transaction]:
        ...

    def revenue_by_currency(self) -> Dict[str, Decimal]:
        ...

    def outcomes_since(self, since: datetime, exclude_providers: Iterable[str] = ()) -> List[Tuple[str, Optional[str], int]]:
        ...


class UnitOfWork(Protocol):
    subscriptions: SubscriptionRepository
    transactions: TransactionRepository

    def __enter__(self) -> "UnitOfWork":
        ...

    def __exit__(self, exc_type, exc, tb) -> None:
        ...

    def is_applied(self, transaction_id: str) -> bool:
        ...

    def record_application(self, transaction_id: str, subscription_id: Optional[str], outcome: str, applied_at: datetime) -> None:
        """Raises AlreadyAppliedError if the transaction already has an application."""
        ...
