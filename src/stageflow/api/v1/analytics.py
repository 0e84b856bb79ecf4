"""REST API endpoint for pipeline analytics."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.stageflow.analytics.schemas import PipelineAnalytics
from src.stageflow.api.deps import get_pipeline_service, get_tenant_id
from src.stageflow.service import PipelineService

router = APIRouter(prefix="/pipelines", tags=["analytics"])


@router.get("/{pipeline_id}/analytics", response_model=PipelineAnalytics)
async def get_pipeline_analytics(
    pipeline_id: str,
    days: int | None = Query(default=None, ge=1, le=365),
    fresh: bool = Query(default=False),
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineAnalytics:
    """Stage metrics, bottlenecks and recommendations for the last ``days`` days.

    ``fresh=true`` skips the report cache.
    """
    return await service.get_analytics(tenant_id, pipeline_id, days=days, fresh=fresh)
