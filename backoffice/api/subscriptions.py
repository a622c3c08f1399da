"""
Subscription API.

Endpoints:
- POST /api/subscriptions/create: Start a subscription (hosted checkout link for paid plans)
- POST /api/subscriptions/verify-payment: Verify a payment after the checkout redirect
- GET  /api/subscriptions/current: Caller's open subscription
- GET  /api/subscriptions/transactions: Caller's billing history
- PUT  /api/subscriptions/{id}: Change plan and/or billing period
- POST /api/subscriptions/{id}/cancel: Cancel now or at period end

Handlers only translate HTTP to lifecycle calls; all state changes go
through the lifecycle manager.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from backoffice.api.deps import Services, get_services
from backoffice.core.auth import get_current_user_id
from backoffice.core.errors import NotFoundError
from backoffice.features.billing.provider import CustomerInfo
from backoffice.models.subscription import Subscription
from backoffice.models.transaction import Transaction


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class _Request(BaseModel):
    """snake_case fields, camelCase accepted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateSubscriptionRequest(_Request):
    plan_id: str = Field(..., min_length=1)
    billing_period: str = "monthly"
    email: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None


class VerifyPaymentRequest(_Request):
    transaction_id: str = Field(..., min_length=1, description="Provider transaction id")
    reference: str = Field(..., min_length=1, description="Checkout reference (tx_ref)")


class UpdateSubscriptionRequest(_Request):
    plan_id: Optional[str] = None
    billing_period: Optional[str] = None


class CancelSubscriptionRequest(_Request):
    immediate: bool = False
    reason: Optional[str] = None


def subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    payload = subscription.model_dump(mode="json")
    payload["is_active"] = subscription.is_active
    return payload


def transaction_payload(transaction: Transaction) -> Dict[str, Any]:
    payload = transaction.model_dump(mode="json")
    # Checkout links are for the payer, not for history listings
    payload["metadata"] = {k: v for k, v in transaction.metadata.items() if k != "paymentLink"}
    return payload


def _owned_subscription(services: Services, subscription_id: str, user_id: str) -> Subscription:
    subscription = services.lifecycle.get_subscription(subscription_id)
    if subscription.user_id != user_id:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


@router.post("/create")
def create_subscription(
    req: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """
    Start a subscription for the caller.

    Returns the subscription plus, for paid plans, the checkout reference and
    payment link. Repeating the call for the same plan and billing period
    returns the same pending checkout.
    """
    customer = CustomerInfo(email=req.email, name=req.name, phone_number=req.phone_number)
    result = services.lifecycle.create_subscription(user_id, req.plan_id, req.billing_period, customer=customer)
    return {
        "subscription": subscription_payload(result.subscription),
        "payment_reference": result.payment_reference,
        "payment_link": result.payment_link,
    }


@router.post("/verify-payment")
def verify_payment(
    req: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    result = services.reconciler.verify_payment(req.transaction_id, req.reference, user_id=user_id)
    return {
        "success": result.success,
        "status": result.status,
        "outcome": result.outcome,
        "subscription_id": result.subscription_id,
    }


@router.get("/current")
def current_subscription(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    subscription = services.lifecycle.get_current_subscription(user_id)
    if subscription is None:
        raise NotFoundError("No active subscription")
    return {"subscription": subscription_payload(subscription)}


@router.get("/transactions")
def billing_history(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    transactions = services.lifecycle.list_transactions(user_id)
    return {"transactions": [transaction_payload(t) for t in transactions]}


@router.put("/{subscription_id}")
def update_subscription(
    subscription_id: str,
    req: UpdateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    _owned_subscription(services, subscription_id, user_id)
    result = services.lifecycle.update_subscription(
        subscription_id, plan_id=req.plan_id, billing_period=req.billing_period
    )
    return {
        "subscription": subscription_payload(result.subscription),
        "proration": result.proration.to_dict(),
        "applied": result.applied,
        "transaction_id": result.transaction.id if result.transaction else None,
        "payment_reference": result.payment_reference,
        "payment_link": result.payment_link,
    }


@router.post("/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    req: CancelSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    _owned_subscription(services, subscription_id, user_id)
    subscription = services.lifecycle.cancel_subscription(subscription_id, immediate=req.immediate, reason=req.reason)
    return {"subscription": subscription_payload(subscription)}
