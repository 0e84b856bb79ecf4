"""REST API endpoints for opportunity events and stage movements.

POST /events is the generic inbound event surface. The opportunity
endpoints are conveniences over it: registration raises deal_created, a
move raises stage_changed and a field write raises value_changed and/or
field_updated. Every response carries the EventResult of the chain.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from src.stageflow.api.deps import get_pipeline_service, get_tenant_id
from src.stageflow.automation.schemas import EventResult
from src.stageflow.ledger.schemas import SYSTEM_ACTOR, DealMovement
from src.stageflow.opportunities.schemas import Opportunity, OpportunityCreate
from src.stageflow.service import PipelineService
from src.stageflow.stages.schemas import TriggerType

router = APIRouter(tags=["opportunities"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SubmitEventRequest(BaseModel):
    type: TriggerType
    opportunity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str = SYSTEM_ACTOR


class MoveOpportunityRequest(BaseModel):
    to_stage: str = Field(..., description="Target stage id or name")
    actor: str
    reason: str = ""


class UpdateFieldRequest(BaseModel):
    field: str
    value: Any = None
    actor: str


class RegisterOpportunityRequest(OpportunityCreate):
    actor: str = SYSTEM_ACTOR


class OpportunityEventResponse(BaseModel):
    """Opportunity state after an event chain, with the chain's result."""

    opportunity: Opportunity
    result: EventResult


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/events", response_model=EventResult)
async def submit_event(
    body: SubmitEventRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> EventResult:
    return await service.submit_event(
        tenant_id, body.type, body.opportunity_id, body.payload, actor=body.actor
    )


@router.post(
    "/opportunities",
    response_model=OpportunityEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_opportunity(
    body: RegisterOpportunityRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> OpportunityEventResponse:
    data = OpportunityCreate.model_validate(body.model_dump(exclude={"actor"}))
    opportunity, result = await service.register_opportunity(tenant_id, data, actor=body.actor)
    return OpportunityEventResponse(opportunity=opportunity, result=result)


@router.get("/opportunities/{opportunity_id}", response_model=Opportunity)
async def get_opportunity(
    opportunity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> Opportunity:
    return await service.get_opportunity(tenant_id, opportunity_id)


@router.post("/opportunities/{opportunity_id}/move", response_model=OpportunityEventResponse)
async def move_opportunity(
    opportunity_id: str,
    body: MoveOpportunityRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> OpportunityEventResponse:
    result = await service.move_opportunity(
        tenant_id, opportunity_id, body.to_stage, body.actor, reason=body.reason
    )
    opportunity = await service.get_opportunity(tenant_id, opportunity_id)
    return OpportunityEventResponse(opportunity=opportunity, result=result)


@router.patch("/opportunities/{opportunity_id}/fields", response_model=OpportunityEventResponse)
async def update_field(
    opportunity_id: str,
    body: UpdateFieldRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> OpportunityEventResponse:
    result = await service.update_opportunity_field(
        tenant_id, opportunity_id, body.field, body.value, body.actor
    )
    opportunity = await service.get_opportunity(tenant_id, opportunity_id)
    return OpportunityEventResponse(opportunity=opportunity, result=result)


@router.get("/opportunities/{opportunity_id}/movements", response_model=list[DealMovement])
async def get_movement_history(
    opportunity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PipelineService = Depends(get_pipeline_service),
) -> list[DealMovement]:
    return await service.get_movement_history(tenant_id, opportunity_id)
