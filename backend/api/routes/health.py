"""Health check endpoint (unversioned, for load balancers and liveness checks)."""

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
import logging

from app.container import Runtime
from app.dependencies import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_start_time = time.monotonic()


@router.get("/health", response_model=dict[str, Any])
async def health_check(runtime: Runtime = Depends(get_runtime)):
    """
    Health check with dependency verification.
    Returns 503 if the database is unreachable.
    """
    checks: dict[str, Any] = {}

    try:
        async with runtime.db_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        checks["database"] = "unavailable"

    checks["queue"] = runtime.queue.mode
    checks["scheduler"] = "running" if runtime.scheduler.is_running else "stopped"

    body = {
        "status": "ok" if checks["database"] == "ok" else "degraded",
        "version": runtime.settings.APP_VERSION,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    return JSONResponse(status_code=200 if body["status"] == "ok" else 503, content=body)
