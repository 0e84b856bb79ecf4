"""Automation rule engine.

Processes opportunity events. Everything for one opportunity runs under
that opportunity's lock: the root event, every stage_changed event raised
by automated moves, and the deferred remainder of delayed action lists.

Events are drained from a work queue rather than by recursion. Each event
carries its depth and the id of the event that started the chain, and a
CascadeBudget shared by the whole chain caps the number of automated
moves. When the budget runs out the chain stops, the error is reported on
the EventResult, and moves that were already appended stay in the ledger.

Per rule and opportunity the engine tracks four states:
- inactive: the rule is switched off
- armed: active and waiting for its trigger
- executing: its action list is running
- cooling_down: the rest of its action list is waiting on a delay
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.stageflow.automation.actions import ActionContext, ActionExecutor, CascadeBudget
from src.stageflow.automation.conditions import evaluate_conditions
from src.stageflow.automation.scheduler import DelayedActionScheduler
from src.stageflow.automation.schemas import (
    ActionOutcome,
    ActionStatus,
    AutomationEvent,
    EventResult,
    RuleExecutionResult,
    RuleExecutionStatus,
    RuleState,
    ScheduledAction,
)
from src.stageflow.automation.triggers import date_trigger_target, trigger_matches
from src.stageflow.core.clock import Clock, ensure_utc, utc_now
from src.stageflow.core.errors import (
    CascadeLimitExceeded,
    InvalidOperation,
    NotFoundError,
    ValidationError,
)
from src.stageflow.core.locks import KeyedLock
from src.stageflow.core.monitoring import rule_executions_total
from src.stageflow.ledger.schemas import SYSTEM_ACTOR, DealMovement
from src.stageflow.ledger.store import MovementLedger
from src.stageflow.opportunities.fields import apply_field_write
from src.stageflow.opportunities.repository import OpportunityRepository
from src.stageflow.opportunities.schemas import Opportunity, OpportunityField
from src.stageflow.stages.registry import ConfigurationStore
from src.stageflow.stages.schemas import (
    AutomationAction,
    PipelineConfiguration,
    StageAutomationRule,
    TriggerType,
)

logger = structlog.get_logger(__name__)


class AutomationEngine:
    """Matches rules to events and executes their actions.

    Args:
        store: Pipeline configuration store.
        repository: Opportunity storage port.
        ledger: Movement ledger.
        executor: Applies individual actions.
        scheduler: Holds deferred action lists.
        cascade_limit: Max automated moves per originating event.
        clock: Injectable time source.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        repository: OpportunityRepository,
        ledger: MovementLedger,
        executor: ActionExecutor,
        scheduler: DelayedActionScheduler,
        cascade_limit: int = 5,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._repository = repository
        self._ledger = ledger
        self._executor = executor
        self._scheduler = scheduler
        self._cascade_limit = cascade_limit
        self._clock = clock
        self._locks = KeyedLock()
        self._executing: set[tuple[str, str]] = set()
        # last fired target date per (rule, opportunity)
        self._fired_dates: dict[tuple[str, str], datetime] = {}

        store.subscribe_rule_disabled(self._on_rule_disabled)

    # ── Public API ──────────────────────────────────────────────────────────

    async def submit_event(
        self,
        event_type: TriggerType | str,
        opportunity_id: str,
        payload: dict[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
        tenant_id: str = "default",
        occurred_at: datetime | None = None,
    ) -> EventResult:
        """Process one event and every stage_changed event it cascades into.

        Raises:
            NotFoundError: If the opportunity or its pipeline is unknown.
            InvalidOperation: If a stage_changed event names a missing stage.
            ValidationError: If the payload is malformed.
        """
        event = AutomationEvent(
            type=TriggerType(event_type),
            opportunity_id=opportunity_id,
            payload=dict(payload or {}),
            actor=actor,
            occurred_at=ensure_utc(occurred_at) if occurred_at else self._clock(),
        )
        async with self._locks.hold(opportunity_id):
            opportunity, config = await self._load(tenant_id, opportunity_id)
            result = EventResult(event_id=event.id, opportunity_id=opportunity_id)

            if not self._prepare_root_event(event, opportunity, config, result):
                return result

            budget = CascadeBudget(self._cascade_limit, event.id, opportunity_id)
            await self._drain(deque([event]), opportunity, config, budget, result)
            await self._repository.save(opportunity)

        logger.info(
            "automation.event_processed",
            event_id=event.id,
            event_type=event.type.value,
            opportunity_id=opportunity_id,
            movements=len(result.movements),
            rules_executed=len(result.rule_executions),
            cascade_aborted=result.cascade_aborted,
        )
        return result

    async def move_opportunity(
        self,
        opportunity_id: str,
        to_stage: str,
        actor: str,
        reason: str = "",
        tenant_id: str = "default",
    ) -> EventResult:
        """Manual stage move followed by stage_changed rule evaluation."""
        return await self.submit_event(
            TriggerType.STAGE_CHANGED,
            opportunity_id,
            {"to_stage": to_stage, "reason": reason},
            actor=actor,
            tenant_id=tenant_id,
        )

    async def update_opportunity_field(
        self,
        opportunity_id: str,
        field: str,
        value: Any,
        actor: str,
        tenant_id: str = "default",
    ) -> EventResult:
        """Typed field write followed by value_changed / field_updated events.

        A write to ``value`` raises value_changed and then field_updated;
        any other field raises field_updated only. Both share one cascade
        budget.

        Raises:
            ValidationError: If the value does not match the field's type.
        """
        async with self._locks.hold(opportunity_id):
            opportunity, config = await self._load(tenant_id, opportunity_id)
            old, new = apply_field_write(
                opportunity, field, value, config.custom_field_definitions(), self._clock()
            )
            await self._repository.save(opportunity)

            payload = {"field": field, "old_value": old, "new_value": new}
            first = AutomationEvent(
                type=(
                    TriggerType.VALUE_CHANGED
                    if field == OpportunityField.VALUE.value
                    else TriggerType.FIELD_UPDATED
                ),
                opportunity_id=opportunity_id,
                payload=payload,
                actor=actor,
                occurred_at=self._clock(),
            )
            queue = deque([first])
            if first.type == TriggerType.VALUE_CHANGED:
                queue.append(
                    AutomationEvent(
                        type=TriggerType.FIELD_UPDATED,
                        opportunity_id=opportunity_id,
                        payload=dict(payload),
                        actor=actor,
                        origin_event_id=first.id,
                        occurred_at=first.occurred_at,
                    )
                )

            result = EventResult(event_id=first.id, opportunity_id=opportunity_id)
            budget = CascadeBudget(self._cascade_limit, first.id, opportunity_id)
            await self._drain(queue, opportunity, config, budget, result)
            await self._repository.save(opportunity)

        logger.info(
            "automation.field_updated",
            opportunity_id=opportunity_id,
            field=field,
            old_value=old,
            new_value=new,
            movements=len(result.movements),
        )
        return result

    async def tick(self, now: datetime | None = None) -> list[EventResult]:
        """Fire date_reached rules that have come due.

        Each (rule, opportunity, target date) fires at most once. Only the
        latest fired target is remembered per rule and opportunity, and a
        disabled rule forgets its targets so re-enabling it re-arms them.
        """
        now = ensure_utc(now) if now else self._clock()
        results: list[EventResult] = []

        for config in await self._store.list_active():
            date_rules = [
                (rule, stage)
                for rule, stage in config.all_rules()
                if rule.is_active and rule.trigger.type == TriggerType.DATE_REACHED
            ]
            if not date_rules:
                continue

            for opportunity in await self._repository.list_for_pipeline(
                config.tenant_id, config.id
            ):
                for rule, stage in date_rules:
                    if stage is not None and stage.id != opportunity.current_stage_id:
                        continue
                    target = date_trigger_target(rule, opportunity)
                    if target is None or now < target:
                        continue
                    key = (rule.id, opportunity.id)
                    if self._fired_dates.get(key) == target:
                        continue
                    self._fired_dates[key] = target
                    results.append(
                        await self.submit_event(
                            TriggerType.DATE_REACHED,
                            opportunity.id,
                            {"rule_id": rule.id, "target_date": target.isoformat()},
                            tenant_id=config.tenant_id,
                            occurred_at=now,
                        )
                    )

        return results

    async def run_due_actions(self, now: datetime | None = None) -> list[EventResult]:
        """Run every scheduled action list whose delay has elapsed.

        Items are removed from the scheduler before they run. An item whose
        rule was deleted or deactivated in the meantime is dropped.
        """
        now = ensure_utc(now) if now else self._clock()
        results: list[EventResult] = []

        for item in self._scheduler.pop_due(now):
            async with self._locks.hold(item.opportunity_id):
                result = await self._run_scheduled(item)
            if result is not None:
                results.append(result)
        return results

    async def rule_state(
        self,
        tenant_id: str,
        pipeline_id: str,
        rule_id: str,
        opportunity_id: str | None = None,
    ) -> RuleState:
        config = await self._store.get_pipeline(tenant_id, pipeline_id)
        found = config.find_rule(rule_id)
        if found is None:
            raise NotFoundError(f"Rule '{rule_id}' not found in pipeline '{pipeline_id}'")
        rule, _stage = found
        return self._state_of(rule, opportunity_id)

    # ── Internals ───────────────────────────────────────────────────────────

    def _on_rule_disabled(self, rule_id: str) -> None:
        for key in [k for k in self._fired_dates if k[0] == rule_id]:
            del self._fired_dates[key]
        cancelled = self._scheduler.cancel_rule(rule_id)
        if cancelled:
            logger.info(
                "automation.pending_actions_cancelled", rule_id=rule_id, cancelled=cancelled
            )

    def _state_of(self, rule: StageAutomationRule, opportunity_id: str | None) -> RuleState:
        if not rule.is_active:
            return RuleState.INACTIVE
        if any(
            rid == rule.id and (opportunity_id is None or oid == opportunity_id)
            for rid, oid in self._executing
        ):
            return RuleState.EXECUTING
        if self._scheduler.pending(rule_id=rule.id, opportunity_id=opportunity_id):
            return RuleState.COOLING_DOWN
        return RuleState.ARMED

    async def _load(
        self, tenant_id: str, opportunity_id: str
    ) -> tuple[Opportunity, PipelineConfiguration]:
        opportunity = await self._repository.get(tenant_id, opportunity_id)
        if opportunity is None:
            raise NotFoundError(f"Opportunity '{opportunity_id}' not found")
        config = await self._store.get_pipeline(tenant_id, opportunity.pipeline_id)
        return opportunity, config

    def _prepare_root_event(
        self,
        event: AutomationEvent,
        opportunity: Opportunity,
        config: PipelineConfiguration,
        result: EventResult,
    ) -> bool:
        """Apply the manual part of a root event; False means stop (duplicate)."""
        if event.type == TriggerType.DEAL_CREATED:
            if not self._ledger.history(opportunity.id):
                placement = DealMovement(
                    opportunity_id=opportunity.id,
                    pipeline_id=config.id,
                    from_stage_id=None,
                    to_stage_id=opportunity.current_stage_id,
                    reason=event.payload.get("reason", "Opportunity created"),
                    timestamp=event.occurred_at,
                    actor=event.actor,
                    value=opportunity.value,
                    probability=opportunity.probability,
                    event_id=event.id,
                )
                result.movements.append(self._ledger.append(placement, opportunity))
            return True

        if event.type != TriggerType.STAGE_CHANGED or not event.payload.get("to_stage"):
            return True

        target = config.resolve_stage(str(event.payload["to_stage"]))
        if target is None:
            raise InvalidOperation(
                f"Stage '{event.payload['to_stage']}' does not exist in pipeline '{config.id}'"
            )

        if opportunity.current_stage_id == target.id:
            last = self._ledger.last_movement(opportunity.id)
            if last is not None and last.to_stage_id == target.id:
                result.duplicate = True
                logger.info(
                    "automation.duplicate_stage_change",
                    event_id=event.id,
                    opportunity_id=opportunity.id,
                    stage_id=target.id,
                )
                return False
            event.payload.update(from_stage_id=None, to_stage_id=target.id)
            return True

        movement = self._executor.move(
            opportunity,
            config,
            target.id,
            actor=event.actor,
            automated=False,
            reason=event.payload.get("reason", ""),
            event_id=event.id,
        )
        result.movements.append(movement)
        event.payload.update(from_stage_id=movement.from_stage_id, to_stage_id=movement.to_stage_id)
        return True

    def _candidate_rules(
        self, config: PipelineConfiguration, snapshot: Opportunity
    ) -> list[StageAutomationRule]:
        """Pipeline-wide rules first, then rules of the opportunity's current stage."""
        rules = list(config.automations)
        stage = config.stage_by_id(snapshot.current_stage_id)
        if stage is not None:
            rules.extend(stage.automation_rules)
        return rules

    async def _drain(
        self,
        queue: deque[AutomationEvent],
        opportunity: Opportunity,
        config: PipelineConfiguration,
        budget: CascadeBudget,
        result: EventResult,
    ) -> None:
        while queue:
            event = queue.popleft()
            result.events_processed += 1
            snapshot = opportunity.model_copy(deep=True)

            for rule in self._candidate_rules(config, snapshot):
                if self._state_of(rule, opportunity.id) != RuleState.ARMED:
                    continue
                if not trigger_matches(rule, event, snapshot, config):
                    continue
                if not evaluate_conditions(rule.conditions, snapshot):
                    continue

                execution, movements = await self._execute_rule(
                    rule,
                    rule.actions,
                    opportunity,
                    config,
                    event_id=event.id,
                    origin_event_id=event.origin_id,
                    budget=budget,
                )
                result.rule_executions.append(execution)
                result.movements.extend(movements)
                queue.extend(
                    self._follow_up(event, movement) for movement in movements
                )

                if execution.status == RuleExecutionStatus.ABORTED:
                    result.cascade_aborted = True
                    result.error = execution.error
                    queue.clear()
                    logger.warning(
                        "automation.cascade_aborted",
                        opportunity_id=opportunity.id,
                        origin_event_id=event.origin_id,
                        limit=budget.limit,
                        rule_id=rule.id,
                    )
                    return

    @staticmethod
    def _follow_up(event: AutomationEvent, movement: DealMovement) -> AutomationEvent:
        return AutomationEvent(
            type=TriggerType.STAGE_CHANGED,
            opportunity_id=movement.opportunity_id,
            payload={
                "from_stage_id": movement.from_stage_id,
                "to_stage_id": movement.to_stage_id,
                "rule_id": movement.rule_id,
            },
            actor=SYSTEM_ACTOR,
            depth=event.depth + 1,
            origin_event_id=event.origin_id,
            occurred_at=movement.timestamp,
        )

    async def _execute_rule(
        self,
        rule: StageAutomationRule,
        actions: list[AutomationAction],
        opportunity: Opportunity,
        config: PipelineConfiguration,
        *,
        event_id: str,
        origin_event_id: str,
        budget: CascadeBudget,
        action_offset: int = 0,
        actions_ran: int = 0,
        deferred: bool = False,
    ) -> tuple[RuleExecutionResult, list[DealMovement]]:
        """Run ``actions`` in order until done, deferred or failed."""
        execution = RuleExecutionResult(
            rule_id=rule.id,
            rule_name=rule.name,
            event_id=event_id,
            status=RuleExecutionStatus.COMPLETED,
        )
        movements: list[DealMovement] = []
        key = (rule.id, opportunity.id)
        self._executing.add(key)
        try:
            for offset, action in enumerate(actions):
                index = action_offset + offset
                if action.delay and not (deferred and offset == 0):
                    due_at = self._clock() + timedelta(minutes=action.delay)
                    self._scheduler.schedule(
                        ScheduledAction(
                            rule_id=rule.id,
                            pipeline_id=config.id,
                            tenant_id=config.tenant_id,
                            opportunity_id=opportunity.id,
                            due_at=due_at,
                            actions=list(actions[offset:]),
                            origin_event_id=origin_event_id,
                            action_offset=index,
                            actions_ran=actions_ran,
                        )
                    )
                    execution.status = RuleExecutionStatus.DEFERRED
                    execution.outcomes.append(
                        ActionOutcome(
                            action_type=action.type.value,
                            status=ActionStatus.DEFERRED,
                            detail=f"due at {due_at.isoformat()}",
                        )
                    )
                    break

                ctx = ActionContext(
                    opportunity=opportunity,
                    config=config,
                    rule_id=rule.id,
                    event_id=event_id,
                    origin_event_id=origin_event_id,
                    action_index=index,
                    budget=budget,
                    deferred=deferred,
                )
                try:
                    outcome, movement = await self._executor.execute(action, ctx)
                except CascadeLimitExceeded as exc:
                    execution.status = RuleExecutionStatus.ABORTED
                    execution.error = str(exc)
                    break
                except (ValidationError, InvalidOperation) as exc:
                    execution.status = RuleExecutionStatus.FAILED
                    execution.error = str(exc)
                    execution.outcomes.append(
                        ActionOutcome(
                            action_type=action.type.value,
                            status=ActionStatus.FAILED,
                            detail=str(exc),
                        )
                    )
                    logger.warning(
                        "automation.action_failed",
                        rule_id=rule.id,
                        opportunity_id=opportunity.id,
                        action_type=action.type.value,
                        error=str(exc),
                    )
                    break

                actions_ran += 1
                execution.outcomes.append(outcome)
                if movement is not None:
                    movements.append(movement)
        finally:
            self._executing.discard(key)

        if execution.status == RuleExecutionStatus.COMPLETED or (
            execution.status != RuleExecutionStatus.DEFERRED and actions_ran > 0
        ):
            await self._store.record_rule_execution(config.id, rule.id, self._clock())
            execution.counted = True

        rule_executions_total.labels(status=execution.status.value).inc()
        logger.info(
            "automation.rule_executed",
            rule_id=rule.id,
            opportunity_id=opportunity.id,
            status=execution.status.value,
            actions_ran=actions_ran,
            counted=execution.counted,
        )
        return execution, movements

    async def _run_scheduled(self, item: ScheduledAction) -> EventResult | None:
        opportunity = await self._repository.get(item.tenant_id, item.opportunity_id)
        if opportunity is None:
            self._log_dropped(item, "opportunity_missing")
            return None
        try:
            config = await self._store.get_pipeline(item.tenant_id, item.pipeline_id)
        except NotFoundError:
            self._log_dropped(item, "pipeline_missing")
            return None
        found = config.find_rule(item.rule_id)
        if found is None or not found[0].is_active:
            self._log_dropped(item, "rule_disabled")
            return None

        rule, _stage = found
        result = EventResult(event_id=item.origin_event_id, opportunity_id=opportunity.id)
        budget = CascadeBudget(self._cascade_limit, item.origin_event_id, opportunity.id)
        execution, movements = await self._execute_rule(
            rule,
            item.actions,
            opportunity,
            config,
            event_id=item.origin_event_id,
            origin_event_id=item.origin_event_id,
            budget=budget,
            action_offset=item.action_offset,
            actions_ran=item.actions_ran,
            deferred=True,
        )
        result.rule_executions.append(execution)
        result.movements.extend(movements)

        if execution.status == RuleExecutionStatus.ABORTED:
            result.cascade_aborted = True
            result.error = execution.error
        elif movements:
            origin = AutomationEvent(
                id=item.origin_event_id,
                type=TriggerType.STAGE_CHANGED,
                opportunity_id=opportunity.id,
            )
            queue = deque(self._follow_up(origin, m) for m in movements)
            await self._drain(queue, opportunity, config, budget, result)

        await self._repository.save(opportunity)
        return result

    @staticmethod
    def _log_dropped(item: ScheduledAction, reason: str) -> None:
        logger.info(
            "automation.scheduled_dropped",
            reason=reason,
            rule_id=item.rule_id,
            opportunity_id=item.opportunity_id,
            due_at=item.due_at.isoformat(),
        )
