"""
Plan catalog API.

Endpoints:
- GET /api/plans: Active plans with their features
- GET /api/plans/compare: Plan x feature comparison matrix
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from backoffice.api.deps import Services, get_services
from backoffice.models.plan import Plan


router = APIRouter(prefix="/api/plans", tags=["plans"])


def plan_payload(plan: Plan) -> Dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "description": plan.description,
        "price_monthly": str(plan.price_monthly),
        "price_annual": str(plan.price_annual),
        "currency": plan.currency,
        "trial_days": plan.trial_days,
        "is_active": plan.is_active,
        "sort_order": plan.sort_order,
        "features": {key: value.model_dump() for key, value in plan.features.items()},
    }


@router.get("")
def list_plans(services: Services = Depends(get_services)):
    """Active plans ordered by sort order."""
    return {"plans": [plan_payload(p) for p in services.catalog.list_plans(active_only=True)]}


@router.get("/compare")
def compare_plans(services: Services = Depends(get_services)):
    return services.features.get_feature_comparison()
