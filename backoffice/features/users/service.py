"""
Customer directory.

The billing core only needs contact details to fill a gateway's customer
block; user management itself lives elsewhere.
"""

from typing import Optional, Protocol
from sqlalchemy import select

from backoffice.core.database import SessionScope, get_db_session, users as app_users
from backoffice.features.billing.provider import CustomerInfo


class CustomerDirectory(Protocol):
    def get_customer(self, user_id: str) -> CustomerInfo:
        ...


class SqlCustomerDirectory:
    """Reads contact details from app_users; unknown users get an empty record."""

    def __init__(self, sessions: SessionScope = get_db_session):
        self._sessions = sessions

    def get_customer(self, user_id: str) -> CustomerInfo:
        with self._sessions() as session:
            row = session.execute(
                select(app_users.c.display_name, app_users.c.email, app_users.c.phone)
                .where(app_users.c.user_id == user_id)
            ).first()
        if not row:
            return CustomerInfo()
        return CustomerInfo(email=row.email, name=row.display_name, phone_number=row.phone)


def merge_customer(base: CustomerInfo, override: Optional[CustomerInfo]) -> CustomerInfo:
    """Request-supplied contact details win over directory values."""
    if override is None:
        return base
    return CustomerInfo(
        email=override.email or base.email,
        name=override.name or base.name,
        phone_number=override.phone_number or base.phone_number,
    )
