"""
Stripe payment gateway.

Implements PaymentGateway with Stripe Checkout in one-off payment mode.
The checkout session id is the provider transaction id; our reference
travels as client_reference_id and in metadata.
"""
import json
import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import stripe

from backoffice.core.config import settings
from backoffice.core.errors import GatewayError, SignatureError, ValidationError
from backoffice.core.metrics import gateway_calls_total
from backoffice.features.billing.provider import (
    EVENT_OTHER,
    EVENT_PAYMENT,
    EVENT_SUBSCRIPTION_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESSFUL,
    CheckoutRequest,
    CheckoutSession,
    GatewayEvent,
    VerifiedPayment,
)
from backoffice.features.billing.retry import RetryPolicy, call_with_retry
from backoffice.models.billing import to_cents

logger = logging.getLogger("backoffice")

_PAYMENT_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}

# Stripe amounts are integers in the currency's smallest unit
_ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})
_THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})


def minor_unit_factor(currency: str) -> Decimal:
    code = (currency or "").upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return Decimal(1)
    if code in _THREE_DECIMAL_CURRENCIES:
        return Decimal(1000)
    return Decimal(100)


def to_minor_units(amount: Decimal, currency: str) -> int:
    # Three-decimal amounts must end in zero, so round to cents first
    scaled = to_cents(Decimal(amount)) * minor_unit_factor(currency)
    return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: Any, currency: str) -> Decimal:
    return Decimal(int(value or 0)) / minor_unit_factor(currency)


class StripeProvider:
    """Stripe implementation of the PaymentGateway protocol."""

    name = "stripe"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep

        if not self.secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        def guarded():
            try:
                return fn()
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                raise GatewayError(f"Stripe {operation} failed: {e}", transient=True) from e
            except stripe.APIError as e:
                raise GatewayError(f"Stripe {operation} failed: {e}", transient=True) from e
            except stripe.StripeError as e:
                raise GatewayError(f"Stripe {operation} failed: {e}") from e

        try:
            result = call_with_retry(guarded, operation=operation, policy=self.retry_policy, sleep=self._sleep)
        except GatewayError:
            gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "error"})
            raise
        gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "ok"})
        return result

    def initialize_payment(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a Checkout Session in payment mode."""
        metadata = dict(request.metadata)
        metadata["reference"] = request.reference
        redirect = request.redirect_url or settings.redirect_url
        params: Dict[str, Any] = {
            "mode": "payment",
            "client_reference_id": request.reference,
            "line_items": [{
                "price_data": {
                    "currency": request.currency.lower(),
                    "unit_amount": to_minor_units(request.amount, request.currency),
                    "product_data": {"name": request.description},
                },
                "quantity": 1,
            }],
            "success_url": f"{redirect}?reference={request.reference}&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{redirect}?reference={request.reference}&cancelled=1",
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if request.customer.email:
            params["customer_email"] = request.customer.email

        session = self._call("initialize_payment", lambda: stripe.checkout.Session.create(**params))
        logger.info(
            "[gateway] checkout initialized",
            extra={"provider": self.name, "reference": request.reference},
        )
        return CheckoutSession(
            success=True,
            payment_link=session.url,
            reference=request.reference,
            provider_session_id=session.id,
        )

    def verify_payment(self, provider_transaction_id: str) -> VerifiedPayment:
        session = self._call(
            "verify_payment",
            lambda: stripe.checkout.Session.retrieve(provider_transaction_id),
        )
        return self._payment_from_session(session)

    def verify_webhook_signature(self, headers: Mapping[str, str], body: bytes) -> None:
        if not self.webhook_secret:
            raise SignatureError("STRIPE_WEBHOOK_SECRET not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        sig_header = lowered.get("stripe-signature")
        if not sig_header:
            raise SignatureError("Missing stripe-signature header")

        try:
            stripe.WebhookSignature.verify_header(body.decode("utf-8"), sig_header, self.webhook_secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureError(f"Invalid signature: {e}")

    def parse_webhook(self, body: bytes) -> GatewayEvent:
        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(event, dict) or "type" not in event:
            raise ValidationError("Webhook body is not a Stripe event")

        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in _PAYMENT_EVENTS:
            payment = self._payment_from_session(obj)
            if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
                payment.status = PAYMENT_FAILED
            return GatewayEvent(event_type=event_type, kind=EVENT_PAYMENT, event_id=event.get("id"), payment=payment, raw=event)

        if event_type == "customer.subscription.deleted":
            return GatewayEvent(event_type=event_type, kind=EVENT_SUBSCRIPTION_CANCELLED, event_id=event.get("id"), raw=event)

        return GatewayEvent(event_type=event_type, kind=EVENT_OTHER, event_id=event.get("id"), raw=event)

    def _payment_from_session(self, session: Mapping[str, Any]) -> VerifiedPayment:
        session_id = session.get("id")
        metadata = dict(session.get("metadata") or {})
        reference = session.get("client_reference_id") or metadata.get("reference")
        if not session_id or not reference:
            raise ValidationError("Checkout session missing id or reference")

        if session.get("payment_status") in ("paid", "no_payment_required"):
            status = PAYMENT_SUCCESSFUL
        elif session.get("status") == "expired":
            status = PAYMENT_FAILED
        else:
            status = PAYMENT_PENDING

        details = session.get("customer_details") or {}
        return VerifiedPayment(
            provider_transaction_id=str(session_id),
            reference=str(reference),
            status=status,
            amount=from_minor_units(session.get("amount_total"), str(session.get("currency") or "")),
            currency=str(session.get("currency") or "").upper(),
            customer={
                "email": details.get("email") or session.get("customer_email"),
                "name": details.get("name"),
                "phone_number": details.get("phone"),
            },
            meta=metadata,
        )
