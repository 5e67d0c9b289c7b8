"""
Operational endpoints for the Bookshelf billing backend.

Liveness and readiness checks plus the Prometheus scrape target; never expose secrets.
"""
import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from bookshelf.core.database import get_engine
from bookshelf.core.metrics import METRICS

logger = logging.getLogger("bookshelf")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "users_profile",
    "billing_events",
    "billing_admin_audit",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
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

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@root_router.get("/metrics")
def metrics_endpoint():
    """Prometheus text exposition of the in-process counters."""
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
