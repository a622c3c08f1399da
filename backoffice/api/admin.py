"""
Admin-only back-office operations router.
Requires X-Admin-Key header for all endpoints.
Handles subscription analytics (stats, expiring, churn, payment metrics), sweeps, usage resets and plan administration.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backoffice.api.deps import Services, get_services
from backoffice.api.plans import plan_payload
from backoffice.api.subscriptions import subscription_payload
from backoffice.core.admin_auth import AdminActor, require_admin
from backoffice.features.subscriptions.jobs import run_sweeps

logger = logging.getLogger("backoffice")

router = APIRouter(prefix="/api/admin", tags=["admin"])


class UsageResetRequest(BaseModel):
    feature: Optional[str] = Field(None, description="Feature key; all features when omitted")


class PlanUpdateRequest(BaseModel):
    """Only fields present in the body are changed."""
    name: Optional[str] = None
    description: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None
    price_monthly: Optional[Decimal] = None
    price_annual: Optional[Decimal] = None
    currency: Optional[str] = None
    trial_days: Optional[int] = Field(None, ge=0)
    features: Optional[Dict[str, Dict[str, Any]]] = None


@router.get("/subscriptions/stats")
def subscription_stats(
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Counts by status, revenue by currency, plan distribution, payments and churn."""
    return services.lifecycle.get_stats()


@router.get("/subscriptions/expiring")
def expiring_subscriptions(
    days: int = Query(7, ge=0, le=366),
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    subscriptions = services.lifecycle.get_expiring_subscriptions(days)
    return {"days": days, "subscriptions": [subscription_payload(s) for s in subscriptions]}


@router.get("/subscriptions/churn")
def churn_analysis(
    days: int = Query(90, ge=1, le=3650),
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.lifecycle.get_churn_analysis(days)


@router.get("/payments/metrics")
def payment_metrics(
    days: int = Query(30, ge=1, le=3650),
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.lifecycle.get_payment_metrics(days)


@router.post("/sweeps/run")
def run_sweeps_now(
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    logger.info("[admin] sweeps requested", extra={"actor": actor.actor_id})
    return run_sweeps(services.lifecycle, sessions=services.sessions)


@router.post("/usage/{user_id}/reset")
def reset_usage(
    user_id: str,
    req: Optional[UsageResetRequest] = None,
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    feature = req.feature if req else None
    count = services.features.reset_usage(user_id, feature)
    logger.info("[admin] usage reset", extra={"actor": actor.actor_id, "user_id": user_id, "feature": feature})
    return {"user_id": user_id, "feature": feature, "counters_reset": count}


@router.post("/plans/seed")
def seed_plans(
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return {"created": services.catalog.seed_plans()}


@router.patch("/plans/{plan_id}")
def update_plan(
    plan_id: str,
    req: PlanUpdateRequest,
    actor: AdminActor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    changes = req.model_dump(exclude_unset=True)
    plan = services.catalog.update_plan(plan_id, **changes)
    services.features.invalidate()
    logger.info("[admin] plan updated", extra={"actor": actor.actor_id, "plan_id": plan_id, "fields": sorted(changes)})
    return {"plan": plan_payload(plan)}
