"""
Webhook reconciler.

Applies payment-provider notifications to the ledger and the lifecycle
manager exactly once per provider transaction id:

    verify_signature -> parse -> record_event -> check_idempotency
        -> resolve_transaction -> apply

The terminal transaction status is committed first; activation is a separate
idempotent step keyed by the transaction id, so a crash in between heals on
the provider's retry.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import insert, update

from backoffice.core.database import SessionScope, get_db_session, webhook_events
from backoffice.core.errors import NotFoundError, SignatureError, ValidationError
from backoffice.core.metrics import webhook_events_total
from backoffice.features.billing.provider import (
    EVENT_PAYMENT,
    EVENT_SUBSCRIPTION_CANCELLED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESSFUL,
    GatewayEvent,
    PaymentGateway,
    VerifiedPayment,
)
from backoffice.features.notifications.service import PAYMENT_FAILED
from backoffice.features.subscriptions.lifecycle import SubscriptionLifecycle
from backoffice.features.subscriptions.repository import (
    ConcurrentModificationError,
    DuplicateTransactionError,
    UnitOfWork,
)
from backoffice.models.billing import BILLING_PERIODS, to_cents, utc_now
from backoffice.models.subscription import ACTIVE, TRIALING
from backoffice.models.transaction import (
    FAILED,
    NEW_SUBSCRIPTION,
    PENDING,
    SUCCESSFUL,
    TRANSACTION_TYPES,
    Transaction,
)

logger = logging.getLogger("backoffice")

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED = "rejected"
OUTCOME_IGNORED = "ignored"
OUTCOME_ERROR = "error"

AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class ReconcileResult:
    outcome: str
    event_type: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SUCCESSFUL


class WebhookReconciler:
    def __init__(
        self,
        *,
        lifecycle: SubscriptionLifecycle,
        gateways: Mapping[str, PaymentGateway],
        default_provider: str,
        uow_factory: Callable[[], UnitOfWork],
        clock: Callable[[], datetime] = utc_now,
        sessions: SessionScope = get_db_session,
    ):
        self.lifecycle = lifecycle
        self.gateways = dict(gateways)
        self.default_provider = default_provider
        self._uow = uow_factory
        self.clock = clock
        self._sessions = sessions

    def gateway(self, provider: Optional[str] = None) -> PaymentGateway:
        name = provider or self.default_provider
        if name not in self.gateways:
            raise ValidationError(f"Unknown payment provider: {name}")
        return self.gateways[name]

    # Entry points --------------------------------------------------------

    def handle_webhook(self, headers: Mapping[str, str], body: bytes, provider: Optional[str] = None) -> ReconcileResult:
        """
        Process one webhook delivery.

        Raises:
            SignatureError: authenticity check failed; nothing was recorded
            ValidationError: verified body could not be parsed
        """
        gateway = self.gateway(provider)
        try:
            self.verify_signature(gateway, headers, body)
        except SignatureError:
            webhook_events_total.inc(labels={"provider": gateway.name, "outcome": OUTCOME_REJECTED})
            raise

        event = self.parse(gateway, body)
        event_row_id = self.record_event(gateway.name, event, body)

        try:
            result = self.process_event(gateway, event)
        except Exception as e:
            self._finish_event(event_row_id, OUTCOME_ERROR, error=str(e))
            webhook_events_total.inc(labels={"provider": gateway.name, "outcome": OUTCOME_ERROR})
            logger.exception(
                "[webhook] processing failed",
                extra={"provider": gateway.name, "event_type": event.event_type, "event_id": event.event_id},
            )
            raise

        self._finish_event(event_row_id, result.outcome, error=result.reason)
        webhook_events_total.inc(labels={"provider": gateway.name, "outcome": result.outcome})
        logger.info(
            f"[webhook] {result.outcome}",
            extra={
                "provider": gateway.name,
                "event_type": event.event_type,
                "event_id": event.event_id,
                "transaction_id": result.transaction_id,
                "subscription_id": result.subscription_id,
                "reason": result.reason,
            },
        )
        return result

    def verify_payment(self, provider_transaction_id: str, reference: str, user_id: Optional[str] = None, provider: Optional[str] = None) -> ReconcileResult:
        """
        Explicit verify path used after the checkout redirect.

        Asks the provider for the payment's state and runs the same pipeline
        from check_idempotency onwards.
        """
        gateway = self.gateway(provider)
        payment = gateway.verify_payment(provider_transaction_id)
        if payment.reference != reference:
            raise ValidationError("Transaction reference mismatch")
        if user_id:
            owner = payment.meta.get("userId")
            if owner and owner != user_id:
                raise NotFoundError("Transaction not found")
        return self.process_payment(gateway, payment)

    # Pipeline steps ------------------------------------------------------

    def verify_signature(self, gateway: PaymentGateway, headers: Mapping[str, str], body: bytes) -> None:
        gateway.verify_webhook_signature(headers, body)

    def parse(self, gateway: PaymentGateway, body: bytes) -> GatewayEvent:
        return gateway.parse_webhook(body)

    def record_event(self, provider: str, event: GatewayEvent, body: bytes) -> int:
        payment = event.payment
        with self._sessions() as session:
            result = session.execute(
                insert(webhook_events).values(
                    provider=provider,
                    event_type=event.event_type,
                    provider_event_id=event.event_id,
                    provider_transaction_id=payment.provider_transaction_id if payment else None,
                    reference=payment.reference if payment else None,
                    payload_hash=hashlib.sha256(body).hexdigest(),
                    received_at=self.clock(),
                )
            )
            return result.inserted_primary_key[0]

    def _finish_event(self, event_row_id: int, outcome: str, error: Optional[str] = None) -> None:
        with self._sessions() as session:
            session.execute(
                update(webhook_events)
                .where(webhook_events.c.id == event_row_id)
                .values(outcome=outcome, error=error, processed_at=self.clock())
            )

    def process_event(self, gateway: PaymentGateway, event: GatewayEvent) -> ReconcileResult:
        if event.kind == EVENT_SUBSCRIPTION_CANCELLED:
            return self._handle_cancellation(event)
        if event.kind != EVENT_PAYMENT or event.payment is None:
            return ReconcileResult(outcome=OUTCOME_IGNORED, event_type=event.event_type, reason="unhandled_event")
        result = self.process_payment(gateway, event.payment)
        result.event_type = event.event_type
        return result

    def process_payment(self, gateway: PaymentGateway, payment: VerifiedPayment) -> ReconcileResult:
        for attempt in (1, 2):
            duplicate = self.check_idempotency(payment)
            if duplicate:
                return duplicate
            try:
                transaction = self.resolve_transaction(gateway, payment)
                break
            except (DuplicateTransactionError, ConcurrentModificationError):
                # A concurrent delivery resolved the pending row first
                if attempt == 2:
                    raise

        if transaction is None:
            reason = "payment_pending" if payment.status == PAYMENT_PENDING else "unknown_reference"
            return ReconcileResult(outcome=OUTCOME_IGNORED, status=payment.status, reason=reason)
        return self.apply(transaction)

    def check_idempotency(self, payment: VerifiedPayment) -> Optional[ReconcileResult]:
        """
        A terminal ledger row for this provider transaction id means the
        payment was already seen. A successful one re-runs the (idempotent)
        apply step.
        """
        with self._uow() as uow:
            existing = uow.transactions.get_by_provider_id(payment.provider_transaction_id)
        if not existing or not existing.is_terminal:
            return None

        subscription_id = existing.subscription_id
        if existing.status == SUCCESSFUL:
            subscription = self.lifecycle.activate_from_transaction(existing)
            subscription_id = subscription.id if subscription else subscription_id
        return ReconcileResult(
            outcome=OUTCOME_DUPLICATE,
            transaction_id=existing.id,
            subscription_id=subscription_id,
            status=existing.status,
        )

    def resolve_transaction(self, gateway: PaymentGateway, payment: VerifiedPayment) -> Optional[Transaction]:
        """
        Move the ledger to the provider-reported terminal status.

        Returns the resolved (or newly recorded) transaction, or None when
        there is nothing terminal to record.
        """
        now = self.clock()
        with self._uow() as uow:
            rows = uow.transactions.list_by_reference(payment.reference)
            pending = next((r for r in reversed(rows) if r.status == PENDING), None)

            if pending:
                status, reason = self._judge(payment, pending.amount, pending.currency)
                if status == PENDING:
                    return None
                if not uow.transactions.resolve(
                    pending.id,
                    status=status,
                    resolved_at=now,
                    provider_transaction_id=payment.provider_transaction_id,
                    failure_reason=reason,
                ):
                    raise ConcurrentModificationError(f"Transaction {pending.id} resolved concurrently")
                return uow.transactions.get(pending.id)

            if rows:
                template = rows[-1]
                status, reason = self._judge(payment, template.amount, template.currency)
                if status == PENDING:
                    return None
                superseding = self._transaction_from_payment(
                    payment,
                    status=status,
                    failure_reason=reason,
                    user_id=template.user_id,
                    subscription_id=template.subscription_id,
                    transaction_type=template.type,
                    amount=payment.amount,
                    currency=payment.currency or template.currency,
                    provider=gateway.name,
                    metadata=template.metadata,
                    supersedes_id=template.id,
                    now=now,
                )
                return uow.transactions.insert(superseding)

        return self._record_from_metadata(gateway, payment, now)

    def _record_from_metadata(self, gateway: PaymentGateway, payment: VerifiedPayment, now: datetime) -> Optional[Transaction]:
        meta = payment.meta or {}
        user_id, plan_id, billing_period = meta.get("userId"), meta.get("planId"), meta.get("billingPeriod")
        if not (user_id and plan_id and billing_period in BILLING_PERIODS):
            return None
        plan = self.lifecycle.plans.get_plan(plan_id)
        if plan is None:
            return None

        status, reason = self._judge(payment, plan.price_for(billing_period), plan.currency)
        if status == PENDING:
            return None
        transaction_type = meta.get("transactionType")
        transaction = self._transaction_from_payment(
            payment,
            status=status,
            failure_reason=reason,
            user_id=user_id,
            subscription_id=meta.get("subscriptionId") or None,
            transaction_type=transaction_type if transaction_type in TRANSACTION_TYPES else NEW_SUBSCRIPTION,
            amount=payment.amount,
            currency=payment.currency or plan.currency,
            provider=gateway.name,
            metadata={k: v for k, v in meta.items()},
            now=now,
        )
        with self._uow() as uow:
            uow.transactions.insert(transaction)
        logger.info(
            "[webhook] recorded transaction from event metadata",
            extra={"reference": payment.reference, "user_id": user_id, "transaction_id": transaction.id},
        )
        return transaction

    def apply(self, transaction: Transaction) -> ReconcileResult:
        if transaction.status != SUCCESSFUL:
            self.lifecycle.notifier.notify(
                PAYMENT_FAILED,
                transaction.user_id,
                {"transaction_id": transaction.id, "reason": transaction.failure_reason},
            )
            outcome = OUTCOME_REJECTED if transaction.failure_reason == AMOUNT_MISMATCH else OUTCOME_APPLIED
            return ReconcileResult(
                outcome=outcome,
                transaction_id=transaction.id,
                subscription_id=transaction.subscription_id,
                status=transaction.status,
                reason=transaction.failure_reason,
            )

        if transaction.supersedes_id and self._reference_already_succeeded(transaction):
            self.lifecycle.skip_transaction(transaction, "reference_already_paid")
            return ReconcileResult(
                outcome=OUTCOME_APPLIED,
                transaction_id=transaction.id,
                subscription_id=transaction.subscription_id,
                status=transaction.status,
                reason="reference_already_paid",
            )

        subscription = self.lifecycle.activate_from_transaction(transaction)
        return ReconcileResult(
            outcome=OUTCOME_APPLIED,
            transaction_id=transaction.id,
            subscription_id=subscription.id if subscription else transaction.subscription_id,
            status=SUCCESSFUL,
        )

    # Helpers -------------------------------------------------------------

    def _reference_already_succeeded(self, transaction: Transaction) -> bool:
        with self._uow() as uow:
            rows = uow.transactions.list_by_reference(transaction.reference)
        return any(r.status == SUCCESSFUL and r.id != transaction.id for r in rows)

    @staticmethod
    def _judge(payment: VerifiedPayment, expected_amount: Decimal, expected_currency: str) -> Tuple[str, Optional[str]]:
        """Map a provider status to a ledger status, checking what was paid."""
        if payment.status == PAYMENT_PENDING:
            return PENDING, None
        if payment.status != PAYMENT_SUCCESSFUL:
            return FAILED, "provider_reported_failure"
        currency_ok = not payment.currency or payment.currency.upper() == expected_currency.upper()
        if not currency_ok or to_cents(payment.amount) < to_cents(expected_amount):
            return FAILED, AMOUNT_MISMATCH
        return SUCCESSFUL, None

    @staticmethod
    def _transaction_from_payment(
        payment: VerifiedPayment,
        *,
        status: str,
        failure_reason: Optional[str],
        user_id: str,
        subscription_id: Optional[str],
        transaction_type: str,
        amount: Decimal,
        currency: str,
        provider: str,
        metadata: Dict,
        now: datetime,
        supersedes_id: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            subscription_id=subscription_id,
            type=transaction_type,
            status=status,
            amount=to_cents(amount),
            currency=currency,
            provider=provider,
            reference=payment.reference,
            provider_transaction_id=payment.provider_transaction_id,
            supersedes_id=supersedes_id,
            failure_reason=failure_reason,
            metadata=dict(metadata or {}),
            created_at=now,
            resolved_at=now,
        )

    def _handle_cancellation(self, event: GatewayEvent) -> ReconcileResult:
        """Provider stopped recurring billing: stop renewing at period end."""
        user_id = _find_user_id(event.raw)
        subscription = self.lifecycle.get_current_subscription(user_id) if user_id else None
        if subscription is None or subscription.status not in (ACTIVE, TRIALING):
            return ReconcileResult(outcome=OUTCOME_IGNORED, event_type=event.event_type, reason="no_matching_subscription")
        if subscription.cancel_at_period_end:
            return ReconcileResult(
                outcome=OUTCOME_DUPLICATE, event_type=event.event_type, subscription_id=subscription.id
            )
        updated = self.lifecycle.cancel_subscription(subscription.id, immediate=False, reason="provider_cancelled")
        return ReconcileResult(
            outcome=OUTCOME_APPLIED,
            event_type=event.event_type,
            subscription_id=updated.id,
            status=updated.status,
        )


def _find_user_id(raw: Mapping) -> Optional[str]:
    candidates: List[Mapping] = []
    data = raw.get("data") or {}
    if isinstance(data, Mapping):
        candidates.append(data)
        if isinstance(data.get("object"), Mapping):
            candidates.append(data["object"])
    for obj in candidates:
        for key in ("meta", "meta_data", "metadata"):
            meta = obj.get(key)
            if isinstance(meta, Mapping) and meta.get("userId"):
                return str(meta["userId"])
    return None
