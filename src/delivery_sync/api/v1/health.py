"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
covers the database and Redis (the sync queue) and reports whether the Notion sync engine is running;
sync being disabled does not make the service unready.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.delivery_sync.config import get_settings
from src.delivery_sync.core.database import get_engine
from src.delivery_sync.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity and sync engine state. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok", "sync": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        checks["sync"] = "disabled"
    elif not service.pool.running:
        checks["sync"] = "stopped"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: returns 200 if the database and Redis answer, 503 otherwise."""
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok" and checks.get("redis") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
