"""
Structured logging for the billing engine.

- JSON lines in production, single-line pretty output elsewhere.
- request_id comes from a ContextVar set by RequestIdMiddleware.
- log_context() binds subscription/command fields for a block, so gateway
  and store logs emitted deep inside a command carry them too.
- log_event() is the one helper commands use; long values are clipped.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

ROOT_LOGGER = "billing_engine"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_bound_fields: ContextVar[Dict[str, object]] = ContextVar("log_fields", default={})

# Record attributes promoted into JSON output when present
STRUCTURED_FIELDS = (
    "subscription_id",
    "user_id",
    "command",
    "event_type",
    "error_code",
    "status",
    "plan_id",
    "amount",
)

MAX_VALUE_CHARS = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """Attach fields to every record logged inside the block."""
    merged = dict(_bound_fields.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _bound_fields.set(merged)
    try:
        yield
    finally:
        _bound_fields.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _iso(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Fill request_id and bound context fields the caller did not set."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        for key, value in _bound_fields.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _iso(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = ""
        for label, attr in (("rid", "request_id"), ("sub", "subscription_id"), ("cmd", "command")):
            value = getattr(record, attr, None)
            if value:
                tags += f" [{label}={value}]"
        line = f"{_iso(record)} {record.levelname:<7} {record.name}{tags} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Install one stdout handler on the billing_engine logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    # pytest's caplog listens on the root logger
    logger.propagate = True

    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _clip(value) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    if len(text) <= MAX_VALUE_CHARS:
        return text
    return text[:MAX_VALUE_CHARS] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    logger_name: str = ROOT_LOGGER,
) -> None:
    """Log msg with the engine's structured fields (None values dropped)."""
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = dict(_bound_fields.get())
    fields.update({
        "request_id": request_id or get_request_id(),
        "subscription_id": subscription_id or fields.get("subscription_id"),
        "user_id": user_id or fields.get("user_id"),
        "event_type": event_type,
        "error_code": error_code,
    })
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    logger = logging.getLogger(logger_name)
    logger.log(logging.getLevelName(level.upper()), msg, extra={k: v for k, v in fields.items() if v is not None})
