"""Error taxonomy and FastAPI handlers.

Command rejections (``InvalidTransition`` and friends) are carried as
values inside transition/command results and only raised at the HTTP
boundary. ``CatalogCorruptionError`` and ``PersistenceUnavailableError``
are fatal: they are raised where detected and surfaced to operators.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from billing_engine.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def __repr__(self):
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


# Lifecycle rejections (recoverable, reported to the caller)

class InvalidTransition(ConflictError):
    code = "invalid_transition"


class AlreadySubscribed(ConflictError):
    code = "already_subscribed"


class AlreadyCanceled(ConflictError):
    code = "already_canceled"


class ResumeWindowExpired(ConflictError):
    code = "resume_window_expired"


class ConcurrentModification(ConflictError):
    code = "concurrent_modification"
    retryable = True


class NotUpgradable(AppError):
    code = "not_upgradable"
    status_code = 422


class NotDowngradable(AppError):
    code = "not_downgradable"
    status_code = 422


class PlanUnavailable(AppError):
    code = "plan_unavailable"
    status_code = 422


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class PaymentFailed(AppError):
    """Gateway declined a charge. Moves the subscription to past_due."""
    code = "payment_failed"
    status_code = 402


# Fatal / unretryable

class CatalogCorruptionError(AppError):
    code = "catalog_corrupted"
    status_code = 500


class PersistenceUnavailableError(AppError):
    code = "persistence_unavailable"
    status_code = 503


class EventOrderError(AppError, ValueError):
    """Appending an event older than the subscription's latest event."""
    code = "event_out_of_order"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("billing_engine")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("billing_engine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("billing_engine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
