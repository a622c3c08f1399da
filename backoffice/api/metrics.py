from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from backoffice.core.metrics import METRICS


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
def metrics_endpoint():
    """Counters in Prometheus text exposition format."""
    return PlainTextResponse(METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
