"""Opportunity storage port.

Opportunity CRUD storage is owned by the CRM, not by the engine. The engine
depends on the OpportunityRepository protocol; InMemoryOpportunityRepository
is the bundled adapter used by the service in development and by tests.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from src.stageflow.opportunities.schemas import Opportunity

logger = structlog.get_logger(__name__)


class OpportunityRepository(Protocol):
    """What the engine needs from the opportunity store."""

    async def get(self, tenant_id: str, opportunity_id: str) -> Opportunity | None: ...

    async def save(self, opportunity: Opportunity) -> Opportunity: ...

    async def list_for_pipeline(
        self, tenant_id: str, pipeline_id: str
    ) -> list[Opportunity]: ...

    async def list_all(self, tenant_id: str | None = None) -> list[Opportunity]: ...


class InMemoryOpportunityRepository:
    """Dict-backed opportunity store.

    ``get`` returns the live aggregate so that ledger appends and the stage
    field update the same object; listing returns copies for read-only use.
    """

    def __init__(self) -> None:
        self._opportunities: dict[str, Opportunity] = {}

    async def get(self, tenant_id: str, opportunity_id: str) -> Opportunity | None:
        opp = self._opportunities.get(opportunity_id)
        if opp is not None and opp.tenant_id == tenant_id:
            return opp
        return None

    async def save(self, opportunity: Opportunity) -> Opportunity:
        self._opportunities[opportunity.id] = opportunity
        logger.debug(
            "opportunities.saved",
            opportunity_id=opportunity.id,
            stage=opportunity.current_stage_id,
        )
        return opportunity

    async def list_for_pipeline(
        self, tenant_id: str, pipeline_id: str
    ) -> list[Opportunity]:
        return [
            o.model_copy(deep=True)
            for o in self._opportunities.values()
            if o.tenant_id == tenant_id and o.pipeline_id == pipeline_id
        ]

    async def list_all(self, tenant_id: str | None = None) -> list[Opportunity]:
        return [
            o.model_copy(deep=True)
            for o in self._opportunities.values()
            if tenant_id is None or o.tenant_id == tenant_id
        ]
