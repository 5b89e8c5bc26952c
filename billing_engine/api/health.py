"""
Health endpoints.

Lightweight liveness/readiness checks without exposing secrets.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from billing_engine.api.deps import get_container
from billing_engine.core.database import get_engine

logger = logging.getLogger("billing_engine")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["subscriptions", "billing_events"]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(container=Depends(get_container)):
    """Readiness: catalog loaded; DB reachable with tables when SQL stores are in use."""
    if len(container.catalog_source.current) == 0:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "plan catalog empty"})
    if not container.persistent:
        return {"status": "ok", "storage": "memory"}

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
        return {"status": "ok", "storage": "sql"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
