import time
from starlette.middleware.base import BaseHTTPMiddleware

from billing_engine.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests by method, normalized path and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        _record_request_metric(request, response)
        return response


def _record_request_metric(request, response) -> None:
    status = getattr(response, "status_code", None) or 0
    http_requests_total.inc(labels={
        "method": request.method.upper(),
        "path": normalize_path(request.url.path),
        "status": str(status),
    })
