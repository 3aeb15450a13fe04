"""Health check endpoints.

Provides:
- Basic liveness probe (/health)
- Readiness check with a database ping (/health/ready)
"""

import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
import logging

from app.config import get_settings
from app.dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_start_time = time.monotonic()


@router.get("/health", response_model=dict[str, Any])
async def health() -> dict[str, Any]:
    """
    Get API information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
    }


@router.get("/health/ready", response_model=dict[str, Any])
async def readiness(container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    """
    Readiness check: pings the schedule database.
    Returns 503 if it is unreachable.
    """
    checks: dict[str, str] = {}

    try:
        async with container.store.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unavailable"

    if checks["database"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return {"status": "healthy", **checks}
