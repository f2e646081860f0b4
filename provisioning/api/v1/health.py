# provisioning/api/v1/health.py

"""
Health endpoints.

- /api/v1/health       -> lightweight liveness (no DB)
- /api/v1/health/db    -> DB readiness probe (small SELECT 1)
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("provisioning.health")

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Liveness probe")
def health():
    return {
        "status": "ok",
        "service": "provisioning",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }


def _ping(session_factory) -> None:
    with session_factory() as db:
        db.execute(text("SELECT 1"))


@router.get("/db", summary="Database readiness probe")
async def health_db(request: Request):
    """
    Performs a tiny `SELECT 1` against the configured database.
    Returns 200 when DB is reachable, 503 when not.
    """
    start = time.perf_counter()
    try:
        await asyncio.to_thread(_ping, request.app.state.session_factory)
    except SQLAlchemyError:
        logger.exception("DB health check failed")
        raise HTTPException(
            status_code=503,
            detail={"code": "db_unavailable", "message": "Database is unreachable."},
        )
    return {
        "status": "ok",
        "db": "up",
        "latency_ms": int((time.perf_counter() - start) * 1000),
    }
