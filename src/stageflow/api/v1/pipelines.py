"""REST API endpoints for pipeline configuration.

Pipelines, their stages and their automation rules. Every write goes
through the configuration store, which validates the resulting
configuration before committing it; engine errors are mapped to HTTP
status codes by the application's exception handlers.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from src.stageflow.api.deps import get_pipeline_service, get_tenant_id
from src.stageflow.service import PipelineService
from src.stageflow.stages.schemas import (
    PipelineConfiguration,
    PipelineCreate,
    PipelineStage,
    StageAutomationRule,
)
from src.stageflow.stages.templates import list_pipeline_templates

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class AddStageRequest(BaseModel):
    """Stage to insert; appended at the end when ``position`` is omitted."""

    stage: PipelineStage
    position: int | None = None
    dwell_target_days: float | None = Field(default=None, gt=0)


class ReorderStagesRequest(BaseModel):
    order: list[str] = Field(..., description="Every stage id, in the new order")


class AddRuleRequest(BaseModel):
    """Rule to attach; pipeline-wide when ``stage_id`` is omitted."""

    rule: StageAutomationRule
    stage_id: str | None = None


# ── Pipelines ────────────────────────────────────────────────────────────────


@router.post("", response_model=PipelineConfiguration, status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    body: PipelineCreate,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.create_pipeline(tenant_id, body)


@router.get("", response_model=list[PipelineConfiguration])
async def list_pipelines(
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> list[PipelineConfiguration]:
    return await service.list_pipelines(tenant_id)


@router.get("/templates")
async def list_templates() -> list[dict[str, str]]:
    """Built-in pipeline templates available to ``from-template``."""
    return list_pipeline_templates()


@router.get("/active", response_model=PipelineConfiguration)
async def get_active_pipeline(
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.get_active_pipeline(tenant_id)


@router.post(
    "/from-template/{template_id}",
    response_model=PipelineConfiguration,
    status_code=status.HTTP_201_CREATED,
)
async def create_from_template(
    template_id: str,
    pipeline_id: str | None = Query(default=None),
    activate: bool = Query(default=False),
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.create_from_template(
        tenant_id, template_id, pipeline_id=pipeline_id, activate=activate
    )


@router.get("/{pipeline_id}", response_model=PipelineConfiguration)
async def get_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.get_pipeline(tenant_id, pipeline_id)


@router.delete("/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> Response:
    await service.delete_pipeline(tenant_id, pipeline_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{pipeline_id}/activate", response_model=PipelineConfiguration)
async def activate_pipeline(
    pipeline_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.activate_pipeline(tenant_id, pipeline_id)


# ── Stages ───────────────────────────────────────────────────────────────────


@router.post(
    "/{pipeline_id}/stages",
    response_model=PipelineConfiguration,
    status_code=status.HTTP_201_CREATED,
)
async def add_stage(
    pipeline_id: str,
    body: AddStageRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.add_stage(
        tenant_id, pipeline_id, body.stage, body.position, body.dwell_target_days
    )


@router.put("/{pipeline_id}/stages/order", response_model=PipelineConfiguration)
async def reorder_stages(
    pipeline_id: str,
    body: ReorderStagesRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.reorder_stages(tenant_id, pipeline_id, body.order)


@router.delete("/{pipeline_id}/stages/{stage_id}", response_model=PipelineConfiguration)
async def remove_stage(
    pipeline_id: str,
    stage_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> PipelineConfiguration:
    return await service.remove_stage(tenant_id, pipeline_id, stage_id)


# ── Rules ────────────────────────────────────────────────────────────────────


@router.post(
    "/{pipeline_id}/rules",
    response_model=StageAutomationRule,
    status_code=status.HTTP_201_CREATED,
)
async def add_rule(
    pipeline_id: str,
    body: AddRuleRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> StageAutomationRule:
    return await service.add_rule(tenant_id, pipeline_id, body.rule, body.stage_id)


@router.patch("/{pipeline_id}/rules/{rule_id}", response_model=StageAutomationRule)
async def update_rule(
    pipeline_id: str,
    rule_id: str,
    changes: dict[str, Any],
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> StageAutomationRule:
    """Partial rule update; ``is_active: false`` cancels the rule's pending delayed actions."""
    return await service.update_rule(tenant_id, pipeline_id, rule_id, changes)


@router.get("/{pipeline_id}/rules/{rule_id}/state")
async def get_rule_state(
    pipeline_id: str,
    rule_id: str,
    opportunity_id: str | None = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> dict[str, str]:
    state = await service.get_rule_state(tenant_id, pipeline_id, rule_id, opportunity_id)
    return {"rule_id": rule_id, "state": state.value}


@router.delete("/{pipeline_id}/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    pipeline_id: str,
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> Response:
    await service.delete_rule(tenant_id, pipeline_id, rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
