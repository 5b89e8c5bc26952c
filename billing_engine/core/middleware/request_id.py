import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from billing_engine.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("billing_engine.http")

# Caller-supplied ids are echoed back; anything odd is replaced
_ACCEPTABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _pick_request_id(supplied) -> str:
    if supplied and _ACCEPTABLE_ID.match(supplied):
        return supplied
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate every log line of a request and echo the id in the response."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _pick_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        status = getattr(response, "status_code", 0)
        logger.log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
