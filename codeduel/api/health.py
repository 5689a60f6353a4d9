"""
Health, readiness and metrics endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import inspect

from codeduel.core.database import check_connection, get_engine
from codeduel.core.metrics import METRICS

logger = logging.getLogger("codeduel")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "challenges",
    "challenge_members",
    "daily_results",
    "penalty_ledger",
    "problem_metadata",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"ok": False, "db": "unreachable"})

    present = set(inspect(get_engine()).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        logger.warning("readyz.missing_tables: %s", ", ".join(missing))
        return JSONResponse(status_code=503, content={"ok": False, "missing_tables": missing})
    return {"ok": True}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return PlainTextResponse(METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
