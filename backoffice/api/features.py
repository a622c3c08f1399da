"""
Feature access API.

Endpoints:
- GET  /api/features: Features available on the caller's plan, with usage
- GET  /api/features/{name}/access: Access decision for one feature
- POST /api/features/{name}/usage: Record usage of a metered feature
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backoffice.api.deps import Services, get_services
from backoffice.core.auth import get_current_user_id


router = APIRouter(prefix="/api/features", tags=["features"])


class TrackUsageRequest(BaseModel):
    increment: int = Field(1, ge=1)


@router.get("")
def available_features(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    features = services.features.get_available_features(user_id)
    usage = services.features.get_usage_stats(user_id)
    return {
        "features": {key: value.model_dump() for key, value in features.items()},
        "usage": {key: record.model_dump(mode="json") for key, record in usage.items()},
    }


@router.get("/{name}/access")
def feature_access(
    name: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return services.features.check_access(user_id, name).to_dict()


@router.post("/{name}/usage")
def track_usage(
    name: str,
    req: TrackUsageRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    record = services.features.track_usage(user_id, name, req.increment)
    return record.model_dump(mode="json")
