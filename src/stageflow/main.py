"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
engine exception handlers, a lifespan that builds the PipelineService and
runs the scheduler loops, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI, status
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError

from src.stageflow.api.middleware.logging import LoggingMiddleware
from src.stageflow.api.v1 import health
from src.stageflow.api.v1.router import router as v1_router
from src.stageflow.automation.scheduler import (
    setup_automation_scheduler,
    start_scheduler_background,
    stop_scheduler_background,
)
from src.stageflow.config import DispatchBackend, get_settings
from src.stageflow.core.errors import InvalidOperation, NotFoundError, ValidationError
from src.stageflow.core.logging import configure_structlog
from src.stageflow.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.stageflow.core.redis import close_redis, get_redis_pool
from src.stageflow.service import PipelineService

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the engine and start its loops, stop them on shutdown."""
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    if getattr(app.state, "pipeline_service", None) is None:
        redis_client = None
        if settings.ANALYTICS_CACHE_ENABLED or settings.DISPATCH_BACKEND == DispatchBackend.redis:
            redis_client = get_redis_pool()
        app.state.pipeline_service = PipelineService(settings, redis_client=redis_client)

    tasks = setup_automation_scheduler(app.state.pipeline_service)
    await start_scheduler_background(tasks, app.state, settings.SCHEDULER_POLL_SECONDS)
    logger.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    await stop_scheduler_background(app.state)
    await close_redis()
    logger.info("app.stopped")


# ── Exception Handlers ───────────────────────────────────────────────────────


async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "problems": exc.problems},
    )


async def _pydantic_error_handler(
    request: Request, exc: PydanticValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid payload",
            "problems": [err["msg"] for err in exc.errors()],
        },
    )


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _invalid_operation_handler(request: Request, exc: InvalidOperation) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Stageflow API",
        version="0.1.0",
        description="Pipeline stage automation and analytics engine",
        lifespan=lifespan,
    )

    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(PydanticValidationError, _pydantic_error_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)
    app.add_exception_handler(InvalidOperation, _invalid_operation_handler)

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router, prefix="/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
