"""
Flutterwave payment gateway (v3 REST API).

Implements PaymentGateway with httpx: hosted-checkout initialization,
transaction verification by id, and webhook authenticity checks.
"""
import base64
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from backoffice.core.config import settings
from backoffice.core.errors import GatewayError, SignatureError, ValidationError
from backoffice.core.metrics import gateway_calls_total
from backoffice.features.billing.provider import (
    EVENT_OTHER,
    EVENT_PAYMENT,
    EVENT_SUBSCRIPTION_CANCELLED,
    CheckoutRequest,
    CheckoutSession,
    GatewayEvent,
    VerifiedPayment,
    normalize_payment_status,
)
from backoffice.features.billing.retry import RetryPolicy, call_with_retry

logger = logging.getLogger("backoffice")

SIGNATURE_HEADER = "flutterwave-signature"
LEGACY_HASH_HEADER = "verif-hash"
PAYMENT_OPTIONS = "card,mobilemoney,ussd,banktransfer"

_EVENT_KINDS = {
    "charge.completed": EVENT_PAYMENT,
    "subscription.cancelled": EVENT_SUBSCRIPTION_CANCELLED,
}


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}")


class FlutterwaveProvider:
    """Flutterwave implementation of the PaymentGateway protocol."""

    name = "flutterwave"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        secret_hash: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            secret_key: API secret key (defaults to FLUTTERWAVE_SECRET_KEY)
            secret_hash: Webhook secret hash (defaults to FLUTTERWAVE_SECRET_HASH)
            base_url: API root including /v3 (defaults to FLUTTERWAVE_BASE_URL)
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.secret_key = secret_key or settings.FLUTTERWAVE_SECRET_KEY
        self.secret_hash = secret_hash or settings.FLUTTERWAVE_SECRET_HASH
        self.base_url = (base_url or settings.FLUTTERWAVE_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._client = client or httpx.Client(timeout=self.timeout)
        self._sleep = sleep

        if not self.secret_key:
            raise GatewayError("FLUTTERWAVE_SECRET_KEY not configured")

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

        def send() -> httpx.Response:
            response = self._client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response

        try:
            response = call_with_retry(send, operation=operation, policy=self.retry_policy, sleep=self._sleep)
        except httpx.HTTPStatusError as e:
            gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "error"})
            message = _error_message(e.response) or f"HTTP {e.response.status_code}"
            raise GatewayError(f"Flutterwave {operation} failed: {message}") from e
        except GatewayError:
            gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "error"})
            raise

        try:
            body = response.json()
        except ValueError as e:
            gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "error"})
            raise GatewayError(f"Flutterwave {operation} returned invalid JSON") from e

        if body.get("status") != "success":
            gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "rejected"})
            raise GatewayError(f"Flutterwave {operation} failed: {body.get('message') or 'unknown error'}")

        gateway_calls_total.inc(labels={"provider": self.name, "operation": operation, "result": "ok"})
        return body

    def initialize_payment(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a hosted payment link (POST /payments)."""
        customer = {"email": request.customer.email, "name": request.customer.name}
        if request.customer.phone_number:
            customer["phonenumber"] = request.customer.phone_number

        payload = {
            "tx_ref": request.reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "redirect_url": request.redirect_url or settings.redirect_url,
            "payment_options": PAYMENT_OPTIONS,
            "customer": customer,
            "customizations": {
                "title": "Subscription",
                "description": request.description,
            },
            "meta": dict(request.metadata),
        }
        body = self._request("POST", "/payments", "initialize_payment", json=payload)
        link = (body.get("data") or {}).get("link")
        if not link:
            raise GatewayError("Flutterwave initialize_payment returned no payment link")

        logger.info(
            "[gateway] checkout initialized",
            extra={"provider": self.name, "reference": request.reference},
        )
        return CheckoutSession(success=True, payment_link=link, reference=request.reference)

    def verify_payment(self, provider_transaction_id: str) -> VerifiedPayment:
        """Fetch authoritative payment state (GET /transactions/{id}/verify)."""
        body = self._request(
            "GET",
            f"/transactions/{provider_transaction_id}/verify",
            "verify_payment",
        )
        data = body.get("data") or {}
        return self._payment_from_data(data)

    def verify_webhook_signature(self, headers: Mapping[str, str], body: bytes) -> None:
        """
        Accept either an HMAC-SHA256 signature of the raw body keyed by the
        secret hash (hex or base64), or the legacy verif-hash header equal to
        the secret hash.
        """
        if not self.secret_hash:
            raise SignatureError("Webhook secret hash not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER)
        if signature:
            digest = hmac.new(self.secret_hash.encode(), body, hashlib.sha256).digest()
            candidates = (digest.hex(), base64.b64encode(digest).decode())
            if any(hmac.compare_digest(signature.strip(), c) for c in candidates):
                return
            raise SignatureError("Invalid webhook signature")

        legacy = lowered.get(LEGACY_HASH_HEADER)
        if legacy:
            if hmac.compare_digest(legacy.strip(), self.secret_hash):
                return
            raise SignatureError("Invalid webhook signature")

        raise SignatureError("Missing webhook signature")

    def parse_webhook(self, body: bytes) -> GatewayEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_type = payload.get("event") or payload.get("event.type") or ""
        kind = _EVENT_KINDS.get(event_type, EVENT_OTHER)
        data = payload.get("data") or {}

        payment = None
        if kind == EVENT_PAYMENT:
            payment = self._payment_from_data(data)

        return GatewayEvent(
            event_type=event_type,
            kind=kind,
            event_id=str(data["id"]) if data.get("id") is not None else None,
            payment=payment,
            raw=payload,
        )

    def _payment_from_data(self, data: Dict[str, Any]) -> VerifiedPayment:
        if data.get("id") is None or not data.get("tx_ref"):
            raise ValidationError("Payment data missing id or tx_ref")
        meta = data.get("meta") or data.get("meta_data") or {}
        return VerifiedPayment(
            provider_transaction_id=str(data["id"]),
            reference=str(data["tx_ref"]),
            status=normalize_payment_status(data.get("status")),
            amount=_to_decimal(data.get("amount", 0)),
            currency=str(data.get("currency") or "").upper(),
            customer=data.get("customer") or {},
            meta=meta if isinstance(meta, dict) else {},
        )


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("message")
    except ValueError:
        return None
