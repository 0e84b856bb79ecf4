"""FastAPI dependency injection for the tenant and the engine service.

These dependencies are used in endpoint function signatures to inject the
tenant id (from the X-Tenant-ID header) and the PipelineService built by
the application lifespan.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.stageflow.service import PipelineService

DEFAULT_TENANT = "default"


async def get_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> str:
    """Tenant from the X-Tenant-ID header, ``default`` when absent."""
    return x_tenant_id or DEFAULT_TENANT


async def get_pipeline_service(request: Request) -> PipelineService:
    """Retrieve PipelineService from app.state, 503 if not available."""
    service = getattr(request.app.state, "pipeline_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="PipelineService is not available. The engine may not have initialized.",
        )
    return service
