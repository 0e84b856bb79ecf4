"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness only
checks Redis when a Redis-backed feature is enabled.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.stageflow.config import DispatchBackend, get_settings
from src.stageflow.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check the engine and, when used, Redis connectivity. Returns check results dict."""
    settings = get_settings()
    checks: dict = {
        "engine": "ok" if getattr(request.app.state, "pipeline_service", None) else "error",
        "redis": "disabled",
    }

    if settings.ANALYTICS_CACHE_ENABLED or settings.DISPATCH_BACKEND == DispatchBackend.redis:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            checks["redis"] = "ok" if pong else "error"
            if not pong:
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the engine is built and Redis (if used) answers."""
    checks = await _check_dependencies(request)
    all_healthy = checks["engine"] == "ok" and checks["redis"] in ("ok", "disabled")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
