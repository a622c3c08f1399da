"""
Subscription lifecycle manager.

Owns the subscription state machine:

    none -> trialing | pending_payment -> active -> past_due -> active | expired
    active -> cancelled (immediately, or at period end via the sweep)
    pending_payment -> expired (stale checkout, or superseded by a new checkout)

Every transition is a conditional update on (id, version, status). Effects of
a successful transaction are applied exactly once, keyed by the transaction
id in transaction_applications, in the same database transaction as the
subscription update.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from backoffice.core.config import settings
from backoffice.core.errors import ConflictError, GatewayError, NotFoundError, StateError, ValidationError
from backoffice.core.metrics import subscription_transitions_total
from backoffice.features.billing.provider import (
    CheckoutRequest,
    CustomerInfo,
    PaymentGateway,
    generate_reference,
)
from backoffice.features.notifications.service import (
    PAYMENT_FAILED,
    PAYMENT_REQUIRED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    LoggingNotifier,
    SubscriptionNotifier,
)
from backoffice.features.plans.service import PlanCatalog
from backoffice.features.subscriptions.proration import ProrationResult, calculate_proration
from backoffice.features.subscriptions.repository import (
    AlreadyAppliedError,
    ConcurrentModificationError,
    SlotTakenError,
    UnitOfWork,
)
from backoffice.features.users.service import CustomerDirectory, merge_customer
from backoffice.models.billing import (
    BILLING_PERIODS,
    add_billing_period,
    grace_deadline,
    to_cents,
    utc_now,
)
from backoffice.models.plan import Plan
from backoffice.models.subscription import (
    ACTIVE,
    CANCELLED,
    EXPIRED,
    ENTITLED_STATUSES,
    OPEN_STATUSES,
    PAST_DUE,
    PENDING_PAYMENT,
    TERMINAL_STATUSES,
    TRIALING,
    Subscription,
)
from backoffice.models.transaction import (
    DOWNGRADE,
    FAILED,
    NEW_SUBSCRIPTION,
    PENDING,
    PRORATION,
    RENEWAL,
    SUCCESSFUL,
    UPGRADE,
    Transaction,
)

logger = logging.getLogger("backoffice")

INTERNAL_PROVIDER = "internal"
APPLIED = "applied"
SKIPPED = "skipped"

_CONFLICT_RETRIES = 3


@dataclass
class CheckoutResult:
    subscription: Subscription
    payment_reference: Optional[str] = None
    payment_link: Optional[str] = None
    transaction: Optional[Transaction] = None


@dataclass
class PlanChangeResult:
    subscription: Subscription
    proration: ProrationResult
    applied: bool  # False while an upgrade waits for payment
    transaction: Transaction
    payment_reference: Optional[str] = None
    payment_link: Optional[str] = None


class SubscriptionLifecycle:
    def __init__(
        self,
        *,
        uow_factory: Callable[[], UnitOfWork],
        plans: PlanCatalog,
        gateway: PaymentGateway,
        customers: Optional[CustomerDirectory] = None,
        notifier: Optional[SubscriptionNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
        grace_period_days: Optional[int] = None,
        redirect_url: Optional[str] = None,
    ):
        self._uow = uow_factory
        self.plans = plans
        self.gateway = gateway
        self.customers = customers
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.grace_period_days = grace_period_days if grace_period_days is not None else settings.GRACE_PERIOD_DAYS
        self.redirect_url = redirect_url or settings.redirect_url
        self._listeners: List[Callable[[str], None]] = []

    # Listeners -----------------------------------------------------------

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback run with the user_id after each committed change."""
        self._listeners.append(listener)

    def _changed(self, subscription: Subscription) -> None:
        subscription_transitions_total.inc(labels={"to_status": subscription.status})
        for listener in self._listeners:
            try:
                listener(subscription.user_id)
            except Exception:
                logger.exception(
                    "[lifecycle] listener failed",
                    extra={"user_id": subscription.user_id, "subscription_id": subscription.id},
                )

    # Queries -------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription:
        with self._uow() as uow:
            subscription = uow.subscriptions.get(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._uow() as uow:
            return uow.subscriptions.get_open_for_user(user_id)

    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        with self._uow() as uow:
            return uow.subscriptions.list_for_user(user_id)

    def find_subscriptions(self, statuses, **filters) -> List[Subscription]:
        with self._uow() as uow:
            return uow.subscriptions.find(statuses, **filters)

    def list_transactions(self, user_id: str, limit: int = 100) -> List[Transaction]:
        """Billing history, newest first."""
        with self._uow() as uow:
            return uow.transactions.list_for_user(user_id, limit=limit)

    def get_expiring_subscriptions(self, days: int = 7) -> List[Subscription]:
        """Active and trialing subscriptions whose current window ends within days, soonest first."""
        if days < 0:
            raise ValidationError("days must be non-negative")
        now = self.clock()
        with self._uow() as uow:
            found = uow.subscriptions.find(
                [ACTIVE, TRIALING],
                period_end_after=now,
                period_end_before=now + timedelta(days=days),
            )
        return sorted(found, key=lambda s: s.current_period_end)

    def get_payment_metrics(self, days: int = 30) -> Dict[str, Any]:
        """
        Gateway payment outcomes recorded in the last days.

        Internal ledger entries (proration credits, free renewals) are not
        payments and are left out. success_rate is a percentage of resolved
        attempts, so checkouts still pending do not count against it.
        """
        since = self.clock() - timedelta(days=days)
        with self._uow() as uow:
            rows = uow.transactions.outcomes_since(since, exclude_providers=[INTERNAL_PROVIDER])

        by_status: Dict[str, int] = {}
        failure_reasons: Dict[str, int] = {}
        for status, reason, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            if status == FAILED:
                key = reason or "unknown"
                failure_reasons[key] = failure_reasons.get(key, 0) + count

        successful = by_status.get(SUCCESSFUL, 0)
        failed = by_status.get(FAILED, 0)
        resolved = successful + failed
        return {
            "window_days": days,
            "total": sum(by_status.values()),
            "successful": successful,
            "failed": failed,
            "pending": by_status.get(PENDING, 0),
            "success_rate": round(successful * 100 / resolved, 2) if resolved else 0.0,
            "failure_reasons": dict(sorted(failure_reasons.items(), key=lambda item: (-item[1], item[0]))),
        }

    def get_churn_analysis(self, days: int = 90) -> Dict[str, Any]:
        """Cancellations in the last days, by reason and by plan."""
        since = self.clock() - timedelta(days=days)
        with self._uow() as uow:
            rows = uow.subscriptions.cancellations_since(since)
            per_plan = uow.subscriptions.plan_distribution(OPEN_STATUSES | TERMINAL_STATUSES)

        total = sum(count for _, _, count in rows)
        reasons: Dict[str, int] = {}
        cancelled_by_plan: Dict[str, int] = {}
        for reason, plan_id, count in rows:
            key = reason or "unspecified"
            reasons[key] = reasons.get(key, 0) + count
            cancelled_by_plan[plan_id] = cancelled_by_plan.get(plan_id, 0) + count

        return {
            "window_days": days,
            "total_churned": total,
            "by_reason": [
                {"reason": reason, "count": count, "percentage": round(count * 100 / total, 2)}
                for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
            ],
            "by_plan": {
                plan_id: {
                    "subscriptions": subscriptions_total,
                    "cancelled": cancelled_by_plan.get(plan_id, 0),
                    "churn_rate": round(cancelled_by_plan.get(plan_id, 0) * 100 / subscriptions_total, 2),
                }
                for plan_id, subscriptions_total in sorted(per_plan.items())
            },
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._uow() as uow:
            by_status = uow.subscriptions.count_by_status()
            distribution = uow.subscriptions.plan_distribution(ENTITLED_STATUSES)
            revenue = uow.transactions.revenue_by_currency()
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active": sum(by_status.get(s, 0) for s in (ACTIVE, TRIALING)),
            "plan_distribution": distribution,
            "revenue": {currency: str(to_cents(amount)) for currency, amount in revenue.items()},
            "expiring_within_7_days": len(self.get_expiring_subscriptions(7)),
            "payments": self.get_payment_metrics(),
            "churn": self.get_churn_analysis(),
        }

    # Creation ------------------------------------------------------------

    def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_period: str,
        customer: Optional[CustomerInfo] = None,
    ) -> CheckoutResult:
        """
        Start a subscription for user_id.

        Trial plans start trialing, free plans start active, everything else
        starts pending_payment with a hosted checkout. A pending checkout for
        the same plan and period is returned as-is; one for a different plan
        is superseded. Any other open subscription is a ConflictError.
        """
        if billing_period not in BILLING_PERIODS:
            raise ValidationError(f"billing_period must be one of {', '.join(BILLING_PERIODS)}")
        plan = self.plans.require_active_plan(plan_id)

        with self._uow() as uow:
            existing = uow.subscriptions.get_open_for_user(user_id)
        if existing:
            resumed = self._resume_or_reject(existing, plan_id, billing_period, plan, customer)
            if resumed:
                return resumed

        now = self.clock()
        price = plan.price_for(billing_period)
        subscription, transaction = self._new_subscription(user_id, plan, billing_period, price, now)

        try:
            with self._uow() as uow:
                uow.subscriptions.insert(subscription)
                if transaction:
                    uow.transactions.insert(transaction)
                    uow.record_application(transaction.id, subscription.id, APPLIED, now)
        except SlotTakenError:
            # Lost the race for the user's slot
            with self._uow() as uow:
                winner = uow.subscriptions.get_open_for_user(user_id)
            if winner and self._is_same_checkout(winner, plan_id, billing_period):
                return self._ensure_checkout(winner, plan, customer)
            raise ConflictError("User already has an open subscription")

        logger.info(
            "[lifecycle] created",
            extra={
                "user_id": user_id,
                "subscription_id": subscription.id,
                "plan_id": plan_id,
                "status": subscription.status,
            },
        )

        if subscription.status != PENDING_PAYMENT:
            self._changed(subscription)
            return CheckoutResult(subscription=subscription, transaction=transaction)
        return self._ensure_checkout(subscription, plan, customer)

    def _resume_or_reject(
        self,
        existing: Subscription,
        plan_id: str,
        billing_period: str,
        plan: Plan,
        customer: Optional[CustomerInfo],
    ) -> Optional[CheckoutResult]:
        if existing.status != PENDING_PAYMENT:
            raise ConflictError("User already has an open subscription")
        if self._is_same_checkout(existing, plan_id, billing_period):
            return self._ensure_checkout(existing, plan, customer)

        with self._uow() as uow:
            superseded = uow.subscriptions.transition(
                existing,
                [PENDING_PAYMENT],
                status=EXPIRED,
                cancellation_reason="superseded",
            )
        logger.info(
            "[lifecycle] pending checkout superseded",
            extra={"user_id": existing.user_id, "subscription_id": existing.id, "new_plan_id": plan_id},
        )
        self._changed(superseded)
        return None

    @staticmethod
    def _is_same_checkout(subscription: Subscription, plan_id: str, billing_period: str) -> bool:
        return (
            subscription.status == PENDING_PAYMENT
            and subscription.plan_id == plan_id
            and subscription.billing_period == billing_period
        )

    def _new_subscription(self, user_id: str, plan: Plan, billing_period: str, price: Decimal, now: datetime):
        subscription_id = str(uuid.uuid4())
        base = dict(
            id=subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            billing_period=billing_period,
            unit_price=price,
            currency=plan.currency,
            created_at=now,
            updated_at=now,
        )

        if plan.trial_days > 0:
            trial_end = now + timedelta(days=plan.trial_days)
            subscription = Subscription(
                status=TRIALING,
                current_period_start=now,
                current_period_end=trial_end,
                trial_end=trial_end,
                **base,
            )
            return subscription, None

        if price == 0:
            transaction = self._transaction(
                user_id=user_id,
                subscription_id=subscription_id,
                transaction_type=NEW_SUBSCRIPTION,
                status=SUCCESSFUL,
                amount=Decimal("0"),
                currency=plan.currency,
                provider=INTERNAL_PROVIDER,
                reference=generate_reference(NEW_SUBSCRIPTION, user_id, plan.plan_id),
                metadata=self._metadata(user_id, plan.plan_id, billing_period, subscription_id, NEW_SUBSCRIPTION),
                now=now,
            )
            subscription = Subscription(
                status=ACTIVE,
                current_period_start=now,
                current_period_end=add_billing_period(now, billing_period),
                transaction_id=transaction.id,
                **base,
            )
            return subscription, transaction

        return Subscription(status=PENDING_PAYMENT, **base), None

    def _ensure_checkout(self, subscription: Subscription, plan: Plan, customer: Optional[CustomerInfo]) -> CheckoutResult:
        with self._uow() as uow:
            pending = uow.transactions.find_pending_for_subscription(subscription.id, NEW_SUBSCRIPTION)
        if pending and pending.metadata.get("paymentLink"):
            return CheckoutResult(
                subscription=subscription,
                payment_reference=pending.reference,
                payment_link=pending.metadata["paymentLink"],
                transaction=pending,
            )
        return self._start_checkout(subscription, NEW_SUBSCRIPTION, subscription.unit_price, plan, customer)

    def _start_checkout(
        self,
        subscription: Subscription,
        transaction_type: str,
        amount: Decimal,
        plan: Plan,
        customer: Optional[CustomerInfo],
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckoutResult:
        """
        Open a hosted checkout and record it in the ledger.

        The ledger row is written after the gateway answers: a pending row with
        the payment link, or a failed row with the gateway's reason.
        """
        reference = generate_reference(transaction_type, subscription.user_id, plan.plan_id)
        target_period = (extra_metadata or {}).get("billingPeriod", subscription.billing_period)
        metadata = self._metadata(
            subscription.user_id, plan.plan_id, target_period, subscription.id, transaction_type
        )
        if extra_metadata:
            metadata.update(extra_metadata)

        directory_entry = self.customers.get_customer(subscription.user_id) if self.customers else CustomerInfo()
        request = CheckoutRequest(
            reference=reference,
            amount=amount,
            currency=subscription.currency,
            customer=merge_customer(directory_entry, customer),
            description=f"{plan.name} ({target_period}) {transaction_type.replace('_', ' ')}",
            metadata={k: str(v) for k, v in metadata.items() if v is not None},
            redirect_url=self.redirect_url,
        )

        try:
            session = self.gateway.initialize_payment(request)
        except GatewayError as e:
            failed = self._transaction(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                transaction_type=transaction_type,
                status=FAILED,
                amount=amount,
                currency=subscription.currency,
                provider=self.gateway.name,
                reference=reference,
                metadata=metadata,
                now=self.clock(),
                failure_reason=e.message,
            )
            with self._uow() as uow:
                uow.transactions.insert(failed)
            logger.warning(
                "[lifecycle] checkout initialization failed",
                extra={
                    "user_id": subscription.user_id,
                    "subscription_id": subscription.id,
                    "reference": reference,
                    "transient": e.transient,
                },
            )
            raise

        metadata["paymentLink"] = session.payment_link
        if session.provider_session_id:
            metadata["providerSessionId"] = session.provider_session_id
        pending = self._transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            transaction_type=transaction_type,
            status=PENDING,
            amount=amount,
            currency=subscription.currency,
            provider=self.gateway.name,
            reference=reference,
            metadata=metadata,
            now=self.clock(),
        )
        with self._uow() as uow:
            uow.transactions.insert(pending)

        logger.info(
            "[lifecycle] checkout started",
            extra={
                "user_id": subscription.user_id,
                "subscription_id": subscription.id,
                "reference": reference,
                "type": transaction_type,
            },
        )
        return CheckoutResult(
            subscription=subscription,
            payment_reference=reference,
            payment_link=session.payment_link,
            transaction=pending,
        )

    # Activation ----------------------------------------------------------

    def activate_from_transaction(self, transaction: Transaction) -> Optional[Subscription]:
        """
        Apply a successful transaction to its subscription, exactly once.

        Safe to call repeatedly: a second call finds the application record
        and returns the subscription unchanged.
        """
        if transaction.status != SUCCESSFUL:
            raise StateError(f"Transaction {transaction.id} is {transaction.status}, not successful")

        for attempt in range(1, _CONFLICT_RETRIES + 1):
            try:
                subscription, outcome = self._apply(transaction)
                break
            except AlreadyAppliedError:
                return self._subscription_for(transaction)
            except (ConcurrentModificationError, SlotTakenError):
                if attempt == _CONFLICT_RETRIES:
                    raise
                logger.info(
                    "[lifecycle] activation conflict, retrying",
                    extra={"transaction_id": transaction.id, "attempt": attempt},
                )

        if outcome == APPLIED and subscription is not None:
            logger.info(
                "[lifecycle] activated",
                extra={
                    "user_id": subscription.user_id,
                    "subscription_id": subscription.id,
                    "transaction_id": transaction.id,
                    "type": transaction.type,
                },
            )
            self._changed(subscription)
            self.notifier.notify(
                SUBSCRIPTION_ACTIVATED,
                subscription.user_id,
                {"subscription_id": subscription.id, "plan_id": subscription.plan_id, "type": transaction.type},
            )
        return subscription

    def skip_transaction(self, transaction: Transaction, reason: str) -> None:
        """Record that a successful transaction must not drive any transition."""
        try:
            with self._uow() as uow:
                uow.record_application(transaction.id, transaction.subscription_id, SKIPPED, self.clock())
        except AlreadyAppliedError:
            return
        logger.warning(
            "[lifecycle] transaction skipped",
            extra={"transaction_id": transaction.id, "user_id": transaction.user_id, "reason": reason},
        )

    def _subscription_for(self, transaction: Transaction) -> Optional[Subscription]:
        with self._uow() as uow:
            current = uow.transactions.get(transaction.id)
            subscription_id = (current or transaction).subscription_id
            return uow.subscriptions.get(subscription_id) if subscription_id else None

    def _apply(self, transaction: Transaction):
        now = self.clock()
        with self._uow() as uow:
            if uow.is_applied(transaction.id):
                raise AlreadyAppliedError(f"Transaction {transaction.id} already applied")

            if transaction.type == NEW_SUBSCRIPTION:
                subscription, outcome = self._apply_new_subscription(uow, transaction, now)
            elif transaction.type == RENEWAL:
                subscription, outcome = self._apply_renewal(uow, transaction, now)
            elif transaction.type == UPGRADE:
                subscription, outcome = self._apply_upgrade(uow, transaction, now)
            else:
                # downgrade/proration entries are applied when recorded
                subscription, outcome = None, SKIPPED

            if outcome == APPLIED and subscription is not None:
                uow.transactions.attach_subscription(transaction.id, subscription.id)
                uow.record_application(transaction.id, subscription.id, outcome, now)
            else:
                uow.record_application(transaction.id, transaction.subscription_id, outcome, now)

        if outcome == SKIPPED:
            logger.warning(
                "[lifecycle] transaction not applied",
                extra={"transaction_id": transaction.id, "type": transaction.type, "user_id": transaction.user_id},
            )
        return subscription, outcome

    def _apply_new_subscription(self, uow: UnitOfWork, transaction: Transaction, now: datetime):
        meta = transaction.metadata or {}
        plan_id = meta.get("planId")
        matched = uow.subscriptions.get(transaction.subscription_id) if transaction.subscription_id else None

        if matched is None or matched.status in TERMINAL_STATUSES:
            candidate = uow.subscriptions.get_open_for_user(transaction.user_id)
            if candidate and candidate.status in (PENDING_PAYMENT, TRIALING) and candidate.plan_id == (plan_id or candidate.plan_id):
                matched = candidate
            elif candidate and candidate.status == PENDING_PAYMENT:
                uow.subscriptions.transition(candidate, [PENDING_PAYMENT], status=EXPIRED, cancellation_reason="superseded")
                matched = None
            elif candidate:
                # Paid for a new subscription while holding a different open one
                return candidate, SKIPPED
            else:
                matched = None

        if matched is None:
            return self._insert_paid_subscription(uow, transaction, now), APPLIED

        if matched.status in (ACTIVE, PAST_DUE):
            # Already activated by another payment for the same checkout
            return matched, APPLIED

        period_end = add_billing_period(now, matched.billing_period)
        activated = uow.subscriptions.transition(
            matched,
            [PENDING_PAYMENT, TRIALING],
            status=ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            grace_until=None,
            transaction_id=transaction.id,
        )
        return activated, APPLIED

    def _insert_paid_subscription(self, uow: UnitOfWork, transaction: Transaction, now: datetime) -> Subscription:
        meta = transaction.metadata or {}
        plan_id = meta.get("planId")
        billing_period = meta.get("billingPeriod", "monthly")
        if not plan_id or billing_period not in BILLING_PERIODS:
            raise ValidationError(f"Transaction {transaction.id} metadata lacks planId/billingPeriod")
        plan = self.plans.require_plan(plan_id)
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=transaction.user_id,
            plan_id=plan_id,
            billing_period=billing_period,
            status=ACTIVE,
            unit_price=plan.price_for(billing_period),
            currency=plan.currency,
            current_period_start=now,
            current_period_end=add_billing_period(now, billing_period),
            transaction_id=transaction.id,
            created_at=now,
            updated_at=now,
        )
        return uow.subscriptions.insert(subscription)

    def _apply_renewal(self, uow: UnitOfWork, transaction: Transaction, now: datetime):
        subscription = uow.subscriptions.get(transaction.subscription_id) if transaction.subscription_id else None
        if subscription is None or subscription.status not in (ACTIVE, TRIALING, PAST_DUE):
            return subscription, SKIPPED

        # The renewal may open the first window at a newly requested billing period
        period = (transaction.metadata or {}).get("billingPeriod")
        if period not in BILLING_PERIODS:
            period = subscription.billing_period
        changes = {}
        if period != subscription.billing_period:
            changes["billing_period"] = period
            changes["unit_price"] = self.plans.require_plan(subscription.plan_id).price_for(period)
        if subscription.pending_billing_period == period:
            changes["pending_billing_period"] = None

        base = max(subscription.current_period_end or now, now)
        renewed = uow.subscriptions.transition(
            subscription,
            [ACTIVE, TRIALING, PAST_DUE],
            status=ACTIVE,
            current_period_start=base,
            current_period_end=add_billing_period(base, period),
            grace_until=None,
            transaction_id=transaction.id,
            **changes,
        )
        return renewed, APPLIED

    def _apply_upgrade(self, uow: UnitOfWork, transaction: Transaction, now: datetime):
        meta = transaction.metadata or {}
        subscription = uow.subscriptions.get(transaction.subscription_id) if transaction.subscription_id else None
        if (
            subscription is None
            or subscription.status != ACTIVE
            or subscription.plan_id != meta.get("previousPlanId")
        ):
            return subscription, SKIPPED

        upgraded = uow.subscriptions.transition(
            subscription,
            [ACTIVE],
            plan_id=meta["planId"],
            unit_price=Decimal(meta["unitPrice"]),
            pending_billing_period=meta.get("pendingBillingPeriod", subscription.pending_billing_period),
            transaction_id=transaction.id,
        )
        return upgraded, APPLIED

    # Plan changes --------------------------------------------------------

    def update_subscription(
        self,
        subscription_id: str,
        plan_id: Optional[str] = None,
        billing_period: Optional[str] = None,
        customer: Optional[CustomerInfo] = None,
    ) -> PlanChangeResult:
        """
        Change plan and/or billing period of an active subscription.

        Upgrades wait for payment of the prorated difference; downgrades and
        equal-price changes apply immediately with a non-positive ledger entry.

        Proration always runs on the window already paid for, at that
        window's billing period. A billing-period change is only recorded as
        pending_billing_period and takes effect from the next renewal.
        """
        subscription = self.get_subscription(subscription_id)
        if subscription.status != ACTIVE:
            raise StateError(f"Subscription is {subscription.status}; plan changes require an active subscription")
        if billing_period is not None and billing_period not in BILLING_PERIODS:
            raise ValidationError(f"billing_period must be one of {', '.join(BILLING_PERIODS)}")

        target_plan_id = plan_id or subscription.plan_id
        next_period = billing_period or subscription.pending_billing_period or subscription.billing_period
        pending_period = next_period if next_period != subscription.billing_period else None
        if target_plan_id == subscription.plan_id and pending_period == subscription.pending_billing_period:
            raise ValidationError("No change requested")

        new_plan = self.plans.require_active_plan(target_plan_id)
        if new_plan.currency != subscription.currency:
            raise ValidationError("Cannot change to a plan in a different currency")

        now = self.clock()
        proration = calculate_proration(
            current_plan_price=subscription.unit_price,
            new_plan_price=new_plan.price_for(subscription.billing_period),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            current_date=now,
            billing_period=subscription.billing_period,
        )
        new_unit_price = new_plan.price_for(subscription.billing_period)
        change_meta = {
            "previousPlanId": subscription.plan_id,
            "previousBillingPeriod": subscription.billing_period,
            "planId": target_plan_id,
            "billingPeriod": subscription.billing_period,
            "pendingBillingPeriod": pending_period,
            "unitPrice": str(new_unit_price),
            "creditAmount": str(proration.credit_amount),
            "chargeAmount": str(proration.charge_amount),
        }

        if proration.is_upgrade and proration.net_amount > 0:
            checkout = self._start_checkout(
                subscription, UPGRADE, proration.net_amount, new_plan, customer, extra_metadata=change_meta
            )
            return PlanChangeResult(
                subscription=subscription,
                proration=proration,
                applied=False,
                transaction=checkout.transaction,
                payment_reference=checkout.payment_reference,
                payment_link=checkout.payment_link,
            )

        entry_type = DOWNGRADE if new_unit_price < subscription.unit_price or proration.net_amount < 0 else PRORATION
        entry = self._transaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            transaction_type=entry_type,
            status=SUCCESSFUL,
            amount=min(proration.net_amount, Decimal("0")),
            currency=subscription.currency,
            provider=INTERNAL_PROVIDER,
            reference=generate_reference(entry_type, subscription.user_id, target_plan_id),
            metadata=change_meta,
            now=now,
        )
        with self._uow() as uow:
            updated = uow.subscriptions.transition(
                subscription,
                [ACTIVE],
                plan_id=target_plan_id,
                unit_price=new_unit_price,
                pending_billing_period=pending_period,
                transaction_id=entry.id,
            )
            uow.transactions.insert(entry)
            uow.record_application(entry.id, subscription.id, APPLIED, now)

        logger.info(
            "[lifecycle] plan changed",
            extra={
                "user_id": subscription.user_id,
                "subscription_id": subscription.id,
                "from_plan": subscription.plan_id,
                "to_plan": target_plan_id,
                "net_amount": str(proration.net_amount),
            },
        )
        self._changed(updated)
        return PlanChangeResult(subscription=updated, proration=proration, applied=True, transaction=entry)

    # Cancellation --------------------------------------------------------

    def cancel_subscription(self, subscription_id: str, immediate: bool = False, reason: Optional[str] = None) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription.status in TERMINAL_STATUSES:
            raise StateError(f"Subscription is already {subscription.status}")
        if subscription.status == PAST_DUE and not immediate:
            raise StateError("A past_due subscription can only be cancelled immediately")

        now = self.clock()
        with self._uow() as uow:
            if immediate or subscription.status == PENDING_PAYMENT:
                updated = uow.subscriptions.transition(
                    subscription,
                    [subscription.status],
                    status=CANCELLED,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    cancel_at_period_end=False,
                )
            elif subscription.cancel_at_period_end:
                return subscription
            else:
                updated = uow.subscriptions.transition(
                    subscription,
                    [subscription.status],
                    cancel_at_period_end=True,
                    cancellation_reason=reason,
                )

        logger.info(
            "[lifecycle] cancelled" if updated.status == CANCELLED else "[lifecycle] cancel scheduled",
            extra={"user_id": subscription.user_id, "subscription_id": subscription.id, "reason": reason},
        )
        self._changed(updated)
        self.notifier.notify(
            SUBSCRIPTION_CANCELLED,
            updated.user_id,
            {"subscription_id": updated.id, "immediate": updated.status == CANCELLED, "reason": reason},
        )
        return updated

    def complete_scheduled_cancellation(self, subscription: Subscription) -> Subscription:
        """Period ended on a cancel_at_period_end subscription."""
        with self._uow() as uow:
            updated = uow.subscriptions.transition(
                subscription,
                [ACTIVE, TRIALING],
                status=CANCELLED,
                cancelled_at=self.clock(),
                cancel_at_period_end=False,
            )
        self._changed(updated)
        self.notifier.notify(SUBSCRIPTION_CANCELLED, updated.user_id, {"subscription_id": updated.id, "immediate": False})
        return updated

    # Renewal, grace and expiry ------------------------------------------

    def renew(self, subscription_id: str) -> CheckoutResult:
        """
        Start the renewal payment for the next period.

        An existing pending renewal is returned. A gateway failure records a
        failed renewal and moves the subscription to past_due.
        """
        subscription = self.get_subscription(subscription_id)
        if subscription.status not in (ACTIVE, TRIALING, PAST_DUE):
            raise StateError(f"Cannot renew a {subscription.status} subscription")
        if subscription.cancel_at_period_end:
            raise StateError("Subscription is set to cancel at period end")

        with self._uow() as uow:
            pending = uow.transactions.find_pending_for_subscription(subscription.id, RENEWAL)
        if pending:
            return CheckoutResult(
                subscription=subscription,
                payment_reference=pending.reference,
                payment_link=pending.metadata.get("paymentLink"),
                transaction=pending,
            )

        plan = self.plans.require_plan(subscription.plan_id)
        renewal_period = subscription.pending_billing_period or subscription.billing_period
        renewal_price = (
            plan.price_for(renewal_period) if renewal_period != subscription.billing_period else subscription.unit_price
        )
        if renewal_price == 0:
            entry = self._transaction(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                transaction_type=RENEWAL,
                status=SUCCESSFUL,
                amount=Decimal("0"),
                currency=subscription.currency,
                provider=INTERNAL_PROVIDER,
                reference=generate_reference(RENEWAL, subscription.user_id, plan.plan_id),
                metadata=self._metadata(subscription.user_id, plan.plan_id, renewal_period, subscription.id, RENEWAL),
                now=self.clock(),
            )
            with self._uow() as uow:
                uow.transactions.insert(entry)
            renewed = self.activate_from_transaction(entry)
            return CheckoutResult(subscription=renewed or subscription, transaction=entry)

        try:
            checkout = self._start_checkout(
                subscription,
                RENEWAL,
                renewal_price,
                plan,
                None,
                extra_metadata={"billingPeriod": renewal_period, "unitPrice": str(renewal_price)},
            )
        except GatewayError:
            if subscription.status != PAST_DUE:
                self.mark_past_due(subscription)
            self.notifier.notify(PAYMENT_FAILED, subscription.user_id, {"subscription_id": subscription.id})
            raise

        self.notifier.notify(
            PAYMENT_REQUIRED,
            subscription.user_id,
            {"subscription_id": subscription.id, "payment_link": checkout.payment_link},
        )
        return checkout

    def mark_past_due(self, subscription: Subscription) -> Subscription:
        now = self.clock()
        with self._uow() as uow:
            updated = uow.subscriptions.transition(
                subscription,
                [ACTIVE, TRIALING],
                status=PAST_DUE,
                grace_until=grace_deadline(subscription.current_period_end, now, self.grace_period_days),
            )
        logger.info(
            "[lifecycle] past due",
            extra={"user_id": updated.user_id, "subscription_id": updated.id, "grace_until": updated.grace_until},
        )
        self._changed(updated)
        return updated

    def expire(self, subscription: Subscription, reason: str) -> Subscription:
        with self._uow() as uow:
            updated = uow.subscriptions.transition(
                subscription,
                [PENDING_PAYMENT, PAST_DUE],
                status=EXPIRED,
                cancellation_reason=reason,
            )
        logger.info(
            "[lifecycle] expired",
            extra={"user_id": updated.user_id, "subscription_id": updated.id, "reason": reason},
        )
        self._changed(updated)
        if subscription.status == PAST_DUE:
            self.notifier.notify(SUBSCRIPTION_EXPIRED, updated.user_id, {"subscription_id": updated.id})
        return updated

    def expire_stale_pending(self, older_than: datetime) -> Dict[str, int]:
        """
        Abandoned checkouts: expire pending_payment subscriptions and fail
        pending transactions created before older_than.
        """
        stats = {"subscriptions_expired": 0, "transactions_failed": 0}
        with self._uow() as uow:
            stale_subscriptions = uow.subscriptions.find([PENDING_PAYMENT], created_before=older_than)
            stale_transactions = uow.transactions.list_stale_pending(older_than)

        for transaction in stale_transactions:
            with self._uow() as uow:
                if uow.transactions.resolve(
                    transaction.id,
                    status=FAILED,
                    resolved_at=self.clock(),
                    failure_reason="checkout_timeout",
                ):
                    stats["transactions_failed"] += 1

        for subscription in stale_subscriptions:
            try:
                self.expire(subscription, "checkout_timeout")
                stats["subscriptions_expired"] += 1
            except ConcurrentModificationError:
                logger.info(
                    "[lifecycle] stale checkout changed concurrently",
                    extra={"subscription_id": subscription.id},
                )
        return stats

    # Helpers -------------------------------------------------------------

    @staticmethod
    def _metadata(user_id: str, plan_id: str, billing_period: str, subscription_id: Optional[str], transaction_type: str) -> Dict[str, Any]:
        return {
            "userId": user_id,
            "planId": plan_id,
            "billingPeriod": billing_period,
            "subscriptionId": subscription_id,
            "transactionType": transaction_type,
        }

    @staticmethod
    def _transaction(
        *,
        user_id: str,
        subscription_id: Optional[str],
        transaction_type: str,
        status: str,
        amount: Decimal,
        currency: str,
        provider: str,
        reference: str,
        metadata: Dict[str, Any],
        now: datetime,
        failure_reason: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
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
            reference=reference,
            provider_transaction_id=provider_transaction_id,
            supersedes_id=supersedes_id,
            failure_reason=failure_reason,
            metadata=dict(metadata),
            created_at=now,
            resolved_at=None if status == PENDING else now,
        )
