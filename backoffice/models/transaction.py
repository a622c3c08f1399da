"""
backoffice/models/transaction.py

Transaction ledger entry. Rows are append-only: a pending row is resolved at
most once, retries and late events append a new row that supersedes it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict

PENDING = "pending"
SUCCESSFUL = "successful"
FAILED = "failed"
REFUNDED = "refunded"

TERMINAL_TRANSACTION_STATUSES = frozenset({SUCCESSFUL, FAILED, REFUNDED})

NEW_SUBSCRIPTION = "new_subscription"
RENEWAL = "renewal"
UPGRADE = "upgrade"
DOWNGRADE = "downgrade"
PRORATION = "proration"

TRANSACTION_TYPES = (NEW_SUBSCRIPTION, RENEWAL, UPGRADE, DOWNGRADE, PRORATION)


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    subscription_id: Optional[str] = None
    type: str
    status: str
    amount: Decimal
    currency: str
    provider: str
    reference: str
    provider_transaction_id: Optional[str] = None
    supersedes_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES
