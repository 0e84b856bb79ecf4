"""PipelineService: composition root for the engine.

Wires the configuration store, opportunity repository, movement ledger,
automation engine and analytics service together and exposes the
external interfaces used by the HTTP layer and the scheduler loop.
Every engine call receives the pipeline configuration explicitly; the
only shared state lives in the components built here.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.stageflow.analytics.schemas import AnalyticsPeriod, PipelineAnalytics
from src.stageflow.analytics.service import PipelineAnalyticsService
from src.stageflow.automation.actions import ActionExecutor
from src.stageflow.automation.dispatcher import (
    InMemoryDispatcher,
    RedisStreamDispatcher,
    SideEffectDispatcher,
)
from src.stageflow.automation.engine import AutomationEngine
from src.stageflow.automation.scheduler import DelayedActionScheduler
from src.stageflow.automation.schemas import EventResult, RuleState
from src.stageflow.config import DispatchBackend, Settings, get_settings
from src.stageflow.core.clock import Clock, utc_now
from src.stageflow.core.errors import NotFoundError, ValidationError
from src.stageflow.ledger.schemas import SYSTEM_ACTOR, DealMovement
from src.stageflow.ledger.store import MovementLedger
from src.stageflow.opportunities.repository import (
    InMemoryOpportunityRepository,
    OpportunityRepository,
)
from src.stageflow.opportunities.schemas import Opportunity, OpportunityCreate
from src.stageflow.stages.registry import ConfigurationStore
from src.stageflow.stages.schemas import (
    PipelineConfiguration,
    PipelineCreate,
    PipelineStage,
    StageAutomationRule,
    TriggerType,
)
from src.stageflow.stages.templates import get_pipeline_template

logger = structlog.get_logger(__name__)


class PipelineService:
    """Facade over configuration, automation, ledger and analytics.

    Args:
        settings: Application settings; defaults to ``get_settings()``.
        repository: Opportunity storage port; in-memory when omitted.
        dispatcher: Side-effect dispatcher; chosen from
            ``settings.DISPATCH_BACKEND`` when omitted.
        redis_client: Redis client for the analytics cache and the stream
            dispatcher. Only used when the settings enable them.
        clock: Injectable time source shared by every component.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        repository: OpportunityRepository | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        redis_client=None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock

        if dispatcher is None:
            if self.settings.DISPATCH_BACKEND == DispatchBackend.redis:
                if redis_client is None:
                    raise ValidationError("DISPATCH_BACKEND=redis requires a Redis client")
                dispatcher = RedisStreamDispatcher(redis_client)
            else:
                dispatcher = InMemoryDispatcher()

        self.store = ConfigurationStore(clock=clock)
        self.repository = repository or InMemoryOpportunityRepository()
        self.ledger = MovementLedger(clock=clock)
        self.dispatcher = dispatcher
        self.scheduler = DelayedActionScheduler()
        self.executor = ActionExecutor(
            self.ledger,
            dispatcher,
            exit_policy=self.settings.EXIT_CRITERIA_POLICY,
            clock=clock,
        )
        self.engine = AutomationEngine(
            self.store,
            self.repository,
            self.ledger,
            self.executor,
            self.scheduler,
            cascade_limit=self.settings.CASCADE_LIMIT,
            clock=clock,
        )
        self.analytics = PipelineAnalyticsService(
            self.store,
            self.repository,
            self.ledger,
            redis_client=redis_client if self.settings.ANALYTICS_CACHE_ENABLED else None,
            period_days=self.settings.ANALYTICS_PERIOD_DAYS,
            trend_threshold=self.settings.VELOCITY_TREND_THRESHOLD,
            congestion_threshold=self.settings.CONGESTION_THRESHOLD,
            cache_ttl=self.settings.ANALYTICS_CACHE_TTL,
            clock=clock,
        )

        logger.info(
            "service.initialized",
            dispatch_backend=type(dispatcher).__name__,
            exit_policy=self.settings.EXIT_CRITERIA_POLICY.value,
            cascade_limit=self.settings.CASCADE_LIMIT,
            analytics_cache=self.settings.ANALYTICS_CACHE_ENABLED and redis_client is not None,
        )

    # ── Configuration ───────────────────────────────────────────────────────

    async def create_pipeline(
        self, tenant_id: str, data: PipelineCreate
    ) -> PipelineConfiguration:
        return await self.store.create_pipeline(tenant_id, data)

    async def create_from_template(
        self,
        tenant_id: str,
        template_id: str,
        pipeline_id: str | None = None,
        activate: bool = False,
    ) -> PipelineConfiguration:
        """Instantiate one of the built-in pipeline templates for a tenant."""
        data = get_pipeline_template(template_id, pipeline_id)
        data.is_active = activate
        return await self.store.create_pipeline(tenant_id, data)

    async def get_pipeline(self, tenant_id: str, pipeline_id: str) -> PipelineConfiguration:
        return await self.store.get_pipeline(tenant_id, pipeline_id)

    async def list_pipelines(self, tenant_id: str) -> list[PipelineConfiguration]:
        return await self.store.list_pipelines(tenant_id)

    async def get_active_pipeline(self, tenant_id: str) -> PipelineConfiguration:
        config = await self.store.get_active(tenant_id)
        if config is None:
            raise NotFoundError(f"No active pipeline for tenant '{tenant_id}'")
        return config

    async def activate_pipeline(self, tenant_id: str, pipeline_id: str) -> PipelineConfiguration:
        return await self.store.activate(tenant_id, pipeline_id)

    async def delete_pipeline(self, tenant_id: str, pipeline_id: str) -> None:
        await self.store.delete_pipeline(tenant_id, pipeline_id)

    async def add_stage(
        self,
        tenant_id: str,
        pipeline_id: str,
        stage: PipelineStage,
        position: int | None = None,
        dwell_target_days: float | None = None,
    ) -> PipelineConfiguration:
        return await self.store.add_stage(
            tenant_id, pipeline_id, stage, position, dwell_target_days
        )

    async def remove_stage(
        self, tenant_id: str, pipeline_id: str, stage_id: str
    ) -> PipelineConfiguration:
        return await self.store.remove_stage(tenant_id, pipeline_id, stage_id)

    async def reorder_stages(
        self, tenant_id: str, pipeline_id: str, new_order: list[str]
    ) -> PipelineConfiguration:
        return await self.store.reorder_stages(tenant_id, pipeline_id, new_order)

    async def add_rule(
        self,
        tenant_id: str,
        pipeline_id: str,
        rule: StageAutomationRule,
        stage_id: str | None = None,
    ) -> StageAutomationRule:
        return await self.store.add_rule(tenant_id, pipeline_id, rule, stage_id)

    async def update_rule(
        self, tenant_id: str, pipeline_id: str, rule_id: str, changes: dict[str, Any]
    ) -> StageAutomationRule:
        return await self.store.update_rule(tenant_id, pipeline_id, rule_id, changes)

    async def set_rule_active(
        self, tenant_id: str, pipeline_id: str, rule_id: str, is_active: bool
    ) -> StageAutomationRule:
        return await self.store.set_rule_active(tenant_id, pipeline_id, rule_id, is_active)

    async def delete_rule(self, tenant_id: str, pipeline_id: str, rule_id: str) -> None:
        await self.store.delete_rule(tenant_id, pipeline_id, rule_id)

    async def get_rule_state(
        self,
        tenant_id: str,
        pipeline_id: str,
        rule_id: str,
        opportunity_id: str | None = None,
    ) -> RuleState:
        return await self.engine.rule_state(tenant_id, pipeline_id, rule_id, opportunity_id)

    # ── Opportunities and events ────────────────────────────────────────────

    async def register_opportunity(
        self,
        tenant_id: str,
        data: OpportunityCreate,
        actor: str = SYSTEM_ACTOR,
    ) -> tuple[Opportunity, EventResult]:
        """Register an opportunity and record its initial placement.

        The pipeline defaults to the tenant's active pipeline and the stage
        to the pipeline's default stage (or its first stage). Registration
        raises a deal_created event, so deal_created rules run right away.

        Raises:
            NotFoundError: If no pipeline is given and none is active.
            ValidationError: If the id is taken or the stage is unknown.
        """
        if data.pipeline_id:
            config = await self.store.get_pipeline(tenant_id, data.pipeline_id)
        else:
            config = await self.get_active_pipeline(tenant_id)

        if data.current_stage_id:
            stage = config.resolve_stage(data.current_stage_id)
            if stage is None:
                raise ValidationError(
                    f"Stage '{data.current_stage_id}' does not exist in pipeline '{config.id}'"
                )
        else:
            ordered = config.ordered_stages()
            stage = next((s for s in ordered if s.is_default), ordered[0])

        if data.id and await self.repository.get(tenant_id, data.id) is not None:
            raise ValidationError(f"Opportunity id '{data.id}' already exists")

        fields = data.model_dump(
            exclude_none=True, exclude={"pipeline_id", "current_stage_id", "probability"}
        )
        now = self.clock()
        opportunity = Opportunity(
            tenant_id=tenant_id,
            pipeline_id=config.id,
            current_stage_id=stage.id,
            probability=(
                data.probability
                if data.probability is not None
                else config.default_probabilities.get(stage.id, stage.probability)
            ),
            created_at=now,
            updated_at=now,
            **fields,
        )
        await self.repository.save(opportunity)
        logger.info(
            "service.opportunity_registered",
            opportunity_id=opportunity.id,
            pipeline_id=config.id,
            stage_id=stage.id,
            tenant_id=tenant_id,
        )

        result = await self.engine.submit_event(
            TriggerType.DEAL_CREATED, opportunity.id, actor=actor, tenant_id=tenant_id
        )
        return await self.get_opportunity(tenant_id, opportunity.id), result

    async def get_opportunity(self, tenant_id: str, opportunity_id: str) -> Opportunity:
        opportunity = await self.repository.get(tenant_id, opportunity_id)
        if opportunity is None:
            raise NotFoundError(f"Opportunity '{opportunity_id}' not found")
        return opportunity.model_copy(deep=True)

    async def submit_event(
        self,
        tenant_id: str,
        event_type: TriggerType | str,
        opportunity_id: str,
        payload: dict[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> EventResult:
        return await self.engine.submit_event(
            event_type, opportunity_id, payload, actor=actor, tenant_id=tenant_id
        )

    async def move_opportunity(
        self,
        tenant_id: str,
        opportunity_id: str,
        to_stage: str,
        actor: str,
        reason: str = "",
    ) -> EventResult:
        return await self.engine.move_opportunity(
            opportunity_id, to_stage, actor, reason=reason, tenant_id=tenant_id
        )

    async def update_opportunity_field(
        self,
        tenant_id: str,
        opportunity_id: str,
        field: str,
        value: Any,
        actor: str,
    ) -> EventResult:
        return await self.engine.update_opportunity_field(
            opportunity_id, field, value, actor, tenant_id=tenant_id
        )

    async def get_movement_history(
        self, tenant_id: str, opportunity_id: str
    ) -> list[DealMovement]:
        """Ledger history of one opportunity, oldest first.

        Raises:
            NotFoundError: If the opportunity is unknown to this tenant.
        """
        await self.get_opportunity(tenant_id, opportunity_id)
        return self.ledger.history(opportunity_id)

    # ── Analytics ───────────────────────────────────────────────────────────

    async def get_analytics(
        self,
        tenant_id: str,
        pipeline_id: str,
        period: AnalyticsPeriod | None = None,
        days: int | None = None,
        fresh: bool = False,
    ) -> PipelineAnalytics:
        if period is None and days is not None:
            period = self.analytics.default_period(days)
        return await self.analytics.get_analytics(tenant_id, pipeline_id, period, fresh=fresh)

    # ── Periodic work ───────────────────────────────────────────────────────

    async def run_due_actions(self) -> list[EventResult]:
        return await self.engine.run_due_actions()

    async def tick(self) -> list[EventResult]:
        return await self.engine.tick()
