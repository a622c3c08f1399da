"""
Payment gateway protocol.

Defines the narrow interface the billing core needs from a hosted-checkout
payment provider (Flutterwave, Stripe). This allows swapping providers
without changing lifecycle or reconciliation logic.
"""
import time
import uuid
from typing import Protocol, Dict, Any, Optional, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

# Event kinds the reconciler understands; anything else is acknowledged and ignored
EVENT_PAYMENT = "payment"
EVENT_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
EVENT_OTHER = "other"

# Normalized provider payment statuses
PAYMENT_SUCCESSFUL = "successful"
PAYMENT_FAILED = "failed"
PAYMENT_PENDING = "pending"

REFERENCE_PREFIX = "BOAMI"
_REFERENCE_TYPE_CODES = {
    "new_subscription": "SUB",
    "renewal": "REN",
    "upgrade": "UPG",
    "downgrade": "DOW",
    "proration": "PRO",
}


@dataclass
class CustomerInfo:
    email: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class CheckoutRequest:
    """Everything a provider needs to open a hosted checkout."""
    reference: str
    amount: Decimal
    currency: str
    customer: CustomerInfo
    description: str
    # Must round-trip userId, planId, billingPeriod back through verify/webhook
    metadata: Dict[str, str] = field(default_factory=dict)
    redirect_url: Optional[str] = None


@dataclass
class CheckoutSession:
    success: bool
    payment_link: Optional[str]
    reference: str
    provider_session_id: Optional[str] = None


@dataclass
class VerifiedPayment:
    """Provider-reported state of one payment attempt."""
    provider_transaction_id: str
    reference: str
    status: str  # successful | failed | pending
    amount: Decimal
    currency: str
    customer: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    """Result of parsing a verified webhook body."""
    event_type: str
    kind: str  # payment | subscription_cancelled | other
    event_id: Optional[str] = None
    payment: Optional[VerifiedPayment] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must:
    - carry a timeout on every outbound call and retry only transient failures
    - raise GatewayError for provider failures (transient=True when retrying may help)
    - raise SignatureError from verify_webhook_signature without parsing the body
    """

    name: str

    def initialize_payment(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Open a hosted checkout for request.amount.

        Raises:
            GatewayError: provider unreachable or rejected the request
        """
        ...

    def verify_payment(self, provider_transaction_id: str) -> VerifiedPayment:
        """
        Ask the provider for the authoritative state of a payment.

        Raises:
            GatewayError: provider unreachable or unknown transaction
        """
        ...

    def verify_webhook_signature(self, headers: Mapping[str, str], body: bytes) -> None:
        """
        Check authenticity of a raw webhook body.

        Raises:
            SignatureError: missing or mismatched signature
        """
        ...

    def parse_webhook(self, body: bytes) -> GatewayEvent:
        """
        Parse an already-verified webhook body.

        Raises:
            ValidationError: malformed payload
        """
        ...


def generate_reference(transaction_type: str, user_id: str, plan_id: str, now_ms: Optional[int] = None) -> str:
    """Build a checkout reference: BOAMI_{TYPE}_{user}_{plan}_{ms}_{nonce}."""
    code = _REFERENCE_TYPE_CODES.get(transaction_type, transaction_type.upper()[:3])
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    nonce = uuid.uuid4().hex[:6]
    return f"{REFERENCE_PREFIX}_{code}_{user_id[-6:]}_{plan_id[-6:]}_{timestamp}_{nonce}"


def normalize_payment_status(raw_status: Optional[str]) -> str:
    status = (raw_status or "").lower()
    if status in ("successful", "success", "succeeded", "paid", "complete", "completed"):
        return PAYMENT_SUCCESSFUL
    if status in ("failed", "failure", "cancelled", "canceled", "expired", "error"):
        return PAYMENT_FAILED
    return PAYMENT_PENDING
