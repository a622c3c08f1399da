"""
Test the subscription state machine: creation, activation, plan changes,
cancellation and renewal.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backoffice.core.errors import ConflictError, GatewayError, NotFoundError, StateError, ValidationError
from backoffice.features.notifications.service import (
    PAYMENT_FAILED,
    PAYMENT_REQUIRED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
)
from backoffice.models.plan import FeatureEntitlement, Plan
from backoffice.models.subscription import ACTIVE, CANCELLED, EXPIRED, PAST_DUE, PENDING_PAYMENT, TRIALING
from backoffice.models.transaction import (
    DOWNGRADE,
    FAILED,
    NEW_SUBSCRIPTION,
    PENDING,
    PRORATION,
    RENEWAL,
    SUCCESSFUL,
    UPGRADE,
)
from backoffice.tests.mocks import charge_event, signed

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def pay(services, reference, provider_transaction_id, amount="90.00"):
    return services.reconciler.handle_webhook(
        signed(), charge_event(provider_transaction_id, reference, amount=amount)
    )


def active_subscription(services, user_id="user_ama", plan_id="professional", amount="90.00", period="monthly"):
    checkout = services.lifecycle.create_subscription(user_id, plan_id, period)
    pay(services, checkout.payment_reference, f"fw-{user_id}-{plan_id}", amount=amount)
    return services.lifecycle.get_subscription(checkout.subscription.id)


# Creation -------------------------------------------------------------


def test_paid_plan_starts_pending_with_checkout(lifecycle, gateway):
    result = lifecycle.create_subscription("user_ama", "professional", "monthly")

    assert result.subscription.status == PENDING_PAYMENT
    assert result.payment_link == f"https://checkout.example/pay/{result.payment_reference}"
    assert result.transaction.status == PENDING
    assert result.transaction.type == NEW_SUBSCRIPTION
    assert result.transaction.amount == Decimal("90.00")

    request = gateway.last_request()
    assert request.reference == result.payment_reference
    assert request.currency == "GHS"
    assert request.metadata["userId"] == "user_ama"
    assert request.metadata["planId"] == "professional"
    assert request.metadata["billingPeriod"] == "monthly"


def test_repeat_create_returns_same_checkout(lifecycle, gateway):
    first = lifecycle.create_subscription("user_ama", "professional", "monthly")
    second = lifecycle.create_subscription("user_ama", "professional", "monthly")

    assert second.subscription.id == first.subscription.id
    assert second.payment_reference == first.payment_reference
    assert len(gateway.requests) == 1


def test_new_checkout_supersedes_pending_one_for_other_plan(lifecycle):
    first = lifecycle.create_subscription("user_ama", "professional", "monthly")
    second = lifecycle.create_subscription("user_ama", "enterprise", "annual")

    old = lifecycle.get_subscription(first.subscription.id)
    assert old.status == EXPIRED
    assert old.cancellation_reason == "superseded"
    assert second.subscription.status == PENDING_PAYMENT
    assert second.transaction.amount == Decimal("2100.00")
    assert lifecycle.get_current_subscription("user_ama").id == second.subscription.id


def test_create_rejected_while_holding_active_subscription(services):
    active_subscription(services)

    with pytest.raises(ConflictError):
        services.lifecycle.create_subscription("user_ama", "enterprise", "monthly")


def test_free_plan_activates_without_gateway(lifecycle, gateway):
    result = lifecycle.create_subscription("user_kwame", "free", "monthly")

    assert result.subscription.status == ACTIVE
    assert result.payment_link is None
    assert result.subscription.current_period_end == datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc)
    assert gateway.requests == []

    [txn] = lifecycle.list_transactions("user_kwame")
    assert txn.status == SUCCESSFUL
    assert txn.amount == Decimal("0.00")
    assert txn.provider == "internal"


def test_trial_plan_starts_trialing(lifecycle, gateway):
    lifecycle.plans.create_plan(
        Plan(
            plan_id="starter",
            name="Starter",
            price_monthly=Decimal("30"),
            price_annual=Decimal("300"),
            currency="GHS",
            trial_days=14,
            features={"products": FeatureEntitlement(enabled=True, limit=200)},
        )
    )

    result = lifecycle.create_subscription("user_esi", "starter", "monthly")

    assert result.subscription.status == TRIALING
    assert result.subscription.trial_end == T0 + timedelta(days=14)
    assert result.subscription.current_period_end == T0 + timedelta(days=14)
    assert gateway.requests == []


@pytest.mark.parametrize(
    "plan_id,billing_period,error",
    [
        ("professional", "weekly", ValidationError),
        ("platinum", "monthly", NotFoundError),
    ],
)
def test_create_validates_plan_and_period(lifecycle, plan_id, billing_period, error):
    with pytest.raises(error):
        lifecycle.create_subscription("user_ama", plan_id, billing_period)
    assert lifecycle.get_current_subscription("user_ama") is None


def test_gateway_failure_records_failed_transaction(lifecycle, gateway):
    gateway.fail_with = GatewayError("Flutterwave initialize_payment failed: timeout", transient=True)

    with pytest.raises(GatewayError):
        lifecycle.create_subscription("user_ama", "professional", "monthly")

    [txn] = lifecycle.list_transactions("user_ama")
    assert txn.status == FAILED
    assert "timeout" in txn.failure_reason
    assert lifecycle.get_current_subscription("user_ama").status == PENDING_PAYMENT

    # Retrying opens a fresh checkout for the same pending subscription
    gateway.fail_with = None
    retry = lifecycle.create_subscription("user_ama", "professional", "monthly")
    assert retry.payment_link is not None
    assert retry.payment_reference != txn.reference


# Activation -----------------------------------------------------------


def test_payment_activates_subscription(services, notifier, clock):
    checkout = services.lifecycle.create_subscription("user_ama", "professional", "monthly")
    clock.advance(minutes=5)

    result = pay(services, checkout.payment_reference, "fw-1001")

    subscription = services.lifecycle.get_subscription(checkout.subscription.id)
    assert result.success
    assert subscription.status == ACTIVE
    assert subscription.current_period_start == clock.now
    assert subscription.current_period_end == datetime(2026, 2, 15, 12, 5, tzinfo=timezone.utc)
    assert subscription.transaction_id == result.transaction_id
    assert SUBSCRIPTION_ACTIVATED in notifier.kinds()


def test_activation_is_idempotent(services):
    subscription = active_subscription(services)
    [txn] = [t for t in services.lifecycle.list_transactions("user_ama") if t.status == SUCCESSFUL]

    again = services.lifecycle.activate_from_transaction(txn)

    assert again.id == subscription.id
    assert again.version == subscription.version
    assert again.current_period_end == subscription.current_period_end


def test_activation_requires_successful_transaction(lifecycle):
    checkout = lifecycle.create_subscription("user_ama", "professional", "monthly")

    with pytest.raises(StateError):
        lifecycle.activate_from_transaction(checkout.transaction)


def test_listeners_run_after_committed_changes(lifecycle):
    seen = []
    lifecycle.add_listener(seen.append)
    lifecycle.add_listener(lambda user_id: 1 / 0)

    lifecycle.create_subscription("user_kwame", "free", "monthly")

    assert seen == ["user_kwame"]


# Plan changes ---------------------------------------------------------


def test_upgrade_waits_for_prorated_payment(services):
    subscription = active_subscription(services)

    change = services.lifecycle.update_subscription(subscription.id, plan_id="enterprise")

    assert change.applied is False
    assert change.proration.net_amount == Decimal("120.00")
    assert change.transaction.type == UPGRADE
    assert change.transaction.amount == Decimal("120.00")
    assert change.payment_link is not None
    assert services.lifecycle.get_subscription(subscription.id).plan_id == "professional"

    pay(services, change.payment_reference, "fw-upgrade", amount="120.00")

    upgraded = services.lifecycle.get_subscription(subscription.id)
    assert upgraded.plan_id == "enterprise"
    assert upgraded.unit_price == Decimal("210")
    assert upgraded.current_period_end == subscription.current_period_end


def test_downgrade_applies_immediately_with_credit(services):
    subscription = active_subscription(services, plan_id="enterprise", amount="210.00")

    change = services.lifecycle.update_subscription(subscription.id, plan_id="professional")

    assert change.applied is True
    assert change.transaction.type == DOWNGRADE
    assert change.transaction.amount == Decimal("-120.00")
    assert change.subscription.plan_id == "professional"
    assert change.subscription.unit_price == Decimal("90")
    assert change.subscription.version == subscription.version + 1


def midway(subscription):
    return subscription.current_period_start + (subscription.current_period_end - subscription.current_period_start) / 2


def test_billing_period_change_takes_effect_on_renewal(services):
    subscription = active_subscription(services)

    change = services.lifecycle.update_subscription(subscription.id, billing_period="annual")

    assert change.applied is True
    assert change.transaction.type == PRORATION
    assert change.transaction.amount == Decimal("0.00")
    assert change.subscription.billing_period == "monthly"
    assert change.subscription.unit_price == Decimal("90")
    assert change.subscription.pending_billing_period == "annual"
    assert change.subscription.current_period_end == subscription.current_period_end

    with pytest.raises(ValidationError):
        services.lifecycle.update_subscription(subscription.id, billing_period="annual")

    reverted = services.lifecycle.update_subscription(subscription.id, billing_period="monthly")
    assert reverted.subscription.pending_billing_period is None


def test_upgrade_after_switch_to_annual_prorates_the_monthly_window(services, clock):
    subscription = active_subscription(services)
    services.lifecycle.update_subscription(subscription.id, billing_period="annual")
    clock.now = midway(subscription)

    change = services.lifecycle.update_subscription(subscription.id, plan_id="enterprise")

    assert change.proration.remaining_fraction == Decimal("0.5")
    assert change.proration.net_amount == Decimal("60.00")
    assert change.transaction.amount == Decimal("60.00")

    pay(services, change.payment_reference, "fw-upgrade-annual", amount="60.00")

    upgraded = services.lifecycle.get_subscription(subscription.id)
    assert upgraded.plan_id == "enterprise"
    assert upgraded.billing_period == "monthly"
    assert upgraded.unit_price == Decimal("210")
    assert upgraded.pending_billing_period == "annual"


def test_upgrade_after_switch_to_monthly_prorates_the_annual_window(services, clock):
    subscription = active_subscription(services, amount="900.00", period="annual")
    services.lifecycle.update_subscription(subscription.id, billing_period="monthly")
    clock.now = midway(subscription)

    change = services.lifecycle.update_subscription(subscription.id, plan_id="enterprise")

    assert change.proration.net_amount == Decimal("600.00")
    assert change.transaction.amount == Decimal("600.00")


def test_renewal_opens_window_at_requested_period(services, clock):
    subscription = active_subscription(services)
    services.lifecycle.update_subscription(subscription.id, billing_period="annual")
    clock.advance(days=29)

    checkout = services.lifecycle.renew(subscription.id)

    assert checkout.transaction.amount == Decimal("900.00")
    assert checkout.transaction.metadata["billingPeriod"] == "annual"

    pay(services, checkout.payment_reference, "fw-renewal-annual", amount="900.00")

    renewed = services.lifecycle.get_subscription(subscription.id)
    assert renewed.billing_period == "annual"
    assert renewed.unit_price == Decimal("900")
    assert renewed.pending_billing_period is None
    assert renewed.current_period_start == subscription.current_period_end
    assert renewed.current_period_end == datetime(2027, 2, 15, 12, 0, tzinfo=timezone.utc)


def test_plan_change_rules(services):
    pending = services.lifecycle.create_subscription("user_kofi", "professional", "monthly")
    with pytest.raises(StateError):
        services.lifecycle.update_subscription(pending.subscription.id, plan_id="enterprise")

    subscription = active_subscription(services)
    with pytest.raises(ValidationError):
        services.lifecycle.update_subscription(subscription.id, plan_id="professional")


# Cancellation ---------------------------------------------------------


def test_cancel_at_period_end_is_idempotent(services, notifier):
    subscription = active_subscription(services)

    first = services.lifecycle.cancel_subscription(subscription.id, reason="too expensive")
    second = services.lifecycle.cancel_subscription(subscription.id)

    assert first.status == ACTIVE
    assert first.cancel_at_period_end is True
    assert second.version == first.version
    assert notifier.kinds().count(SUBSCRIPTION_CANCELLED) == 1


def test_immediate_cancel(services, clock):
    subscription = active_subscription(services)

    cancelled = services.lifecycle.cancel_subscription(subscription.id, immediate=True)

    assert cancelled.status == CANCELLED
    assert cancelled.cancelled_at == clock.now
    assert services.lifecycle.get_current_subscription("user_ama") is None

    with pytest.raises(StateError):
        services.lifecycle.cancel_subscription(subscription.id)


def test_pending_subscription_cancels_immediately(lifecycle):
    checkout = lifecycle.create_subscription("user_ama", "professional", "monthly")

    cancelled = lifecycle.cancel_subscription(checkout.subscription.id)

    assert cancelled.status == CANCELLED


def test_past_due_requires_immediate_cancel(services):
    subscription = services.lifecycle.mark_past_due(active_subscription(services))

    with pytest.raises(StateError):
        services.lifecycle.cancel_subscription(subscription.id)
    assert services.lifecycle.cancel_subscription(subscription.id, immediate=True).status == CANCELLED


# Renewal --------------------------------------------------------------


def test_renewal_extends_from_period_end(services, notifier, clock):
    subscription = active_subscription(services)
    clock.advance(days=29)

    checkout = services.lifecycle.renew(subscription.id)
    again = services.lifecycle.renew(subscription.id)

    assert checkout.transaction.type == RENEWAL
    assert again.payment_reference == checkout.payment_reference
    assert PAYMENT_REQUIRED in notifier.kinds()

    pay(services, checkout.payment_reference, "fw-renewal")

    renewed = services.lifecycle.get_subscription(subscription.id)
    assert renewed.current_period_start == subscription.current_period_end
    assert renewed.current_period_end == datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def test_renewal_gateway_failure_moves_to_past_due(services, gateway, notifier):
    subscription = active_subscription(services)
    gateway.fail_with = GatewayError("Flutterwave initialize_payment failed: HTTP 503", transient=True)

    with pytest.raises(GatewayError):
        services.lifecycle.renew(subscription.id)

    past_due = services.lifecycle.get_subscription(subscription.id)
    assert past_due.status == PAST_DUE
    assert past_due.grace_until == subscription.current_period_end + timedelta(days=7)
    assert PAYMENT_FAILED in notifier.kinds()
    assert any(t.type == RENEWAL and t.status == FAILED for t in services.lifecycle.list_transactions("user_ama"))


def test_free_plan_renews_internally(lifecycle, gateway):
    subscription = lifecycle.create_subscription("user_kwame", "free", "monthly").subscription

    result = lifecycle.renew(subscription.id)

    assert result.subscription.current_period_end == datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert gateway.requests == []


def test_renew_refused_when_cancelling(services):
    subscription = active_subscription(services)
    services.lifecycle.cancel_subscription(subscription.id)

    with pytest.raises(StateError):
        services.lifecycle.renew(subscription.id)


def test_stats(services):
    active_subscription(services)
    services.lifecycle.create_subscription("user_kofi", "enterprise", "monthly")

    stats = services.lifecycle.get_stats()

    assert stats["total"] == 2
    assert stats["active"] == 1
    assert stats["by_status"] == {ACTIVE: 1, PENDING_PAYMENT: 1}
    assert stats["plan_distribution"] == {"professional": 1}
    assert stats["revenue"] == {"GHS": "90.00"}


# Reporting ------------------------------------------------------------


def test_expiring_subscriptions_soonest_first(services, clock):
    monthly = active_subscription(services)
    active_subscription(services, user_id="user_kofi", amount="900.00", period="annual")
    clock.advance(days=25)

    expiring = services.lifecycle.get_expiring_subscriptions(7)

    assert [s.id for s in expiring] == [monthly.id]
    assert services.lifecycle.get_expiring_subscriptions(3) == []
    with pytest.raises(ValidationError):
        services.lifecycle.get_expiring_subscriptions(-1)


def test_payment_metrics_from_ledger(services, gateway, clock):
    subscription = active_subscription(services)
    services.lifecycle.update_subscription(subscription.id, billing_period="annual")
    services.lifecycle.create_subscription("user_kofi", "professional", "monthly")
    gateway.fail_with = GatewayError("card declined")
    with pytest.raises(GatewayError):
        services.lifecycle.create_subscription("user_kwame", "enterprise", "monthly")

    metrics = services.lifecycle.get_payment_metrics(30)

    assert metrics["total"] == 3
    assert metrics["successful"] == 1
    assert metrics["failed"] == 1
    assert metrics["pending"] == 1
    assert metrics["success_rate"] == 50.0
    assert metrics["failure_reasons"] == {"card declined": 1}

    clock.advance(days=31)
    assert services.lifecycle.get_payment_metrics(30)["total"] == 0


def test_churn_by_reason_and_plan(services):
    ama = active_subscription(services)
    kofi = active_subscription(services, user_id="user_kofi", plan_id="enterprise", amount="210.00")
    active_subscription(services, user_id="user_kwame")
    services.lifecycle.cancel_subscription(ama.id, immediate=True, reason="too expensive")
    services.lifecycle.cancel_subscription(kofi.id, immediate=True)

    churn = services.lifecycle.get_churn_analysis(90)

    assert churn["total_churned"] == 2
    assert churn["by_reason"] == [
        {"reason": "too expensive", "count": 1, "percentage": 50.0},
        {"reason": "unspecified", "count": 1, "percentage": 50.0},
    ]
    assert churn["by_plan"]["professional"] == {"subscriptions": 2, "cancelled": 1, "churn_rate": 50.0}
    assert churn["by_plan"]["enterprise"] == {"subscriptions": 1, "cancelled": 1, "churn_rate": 100.0}
