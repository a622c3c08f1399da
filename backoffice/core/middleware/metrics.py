from starlette.middleware.base import BaseHTTPMiddleware

from backoffice.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by method, route and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        _record_request_metric(request, response)
        return response


def _record_request_metric(request, response) -> None:
    try:
        # Routing fills path_params into the shared scope once a route matched
        path = normalize_path(request.url.path, request.scope.get("path_params"))
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": path,
            "status": str(getattr(response, "status_code", None) or 0),
        })
    except Exception:
        # Do not fail the request on metrics errors
        return
