"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.stageflow.api.v1 import analytics, opportunities, pipelines

router = APIRouter()

router.include_router(pipelines.router)
router.include_router(opportunities.router)
router.include_router(analytics.router)
