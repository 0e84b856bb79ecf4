"""Integration tests for the automation engine through PipelineService.

Tests cover:
- manual moves, duplicate stage_changed idempotency, moves to missing stages
- the cascade limit aborting an automated move cycle at exactly N moves
- value_changed rules moving a large deal to Executive Review exactly once
- delayed actions: execution, deferred no-op moves, cancellation on deactivation
- exit criteria under the strict and advisory policies
- side-effect failures not stopping later actions
- concurrent rule-driven and manual moves on one opportunity serializing
- deal_created and date_reached triggers, execution bookkeeping
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.stageflow.automation.dispatcher import InMemoryDispatcher
from src.stageflow.automation.schemas import (
    ActionStatus,
    RuleExecutionStatus,
    RuleState,
)
from src.stageflow.config import ExitCriteriaPolicy
from src.stageflow.core.errors import ExitCriteriaNotMet, InvalidOperation, ValidationError
from src.stageflow.opportunities.schemas import OpportunityCreate
from src.stageflow.service import PipelineService
from src.stageflow.stages.schemas import (
    ActionType,
    AutomationAction,
    AutomationCondition,
    AutomationTrigger,
    ConditionOperator,
    PipelineCreate,
    PipelineStage,
    StageAutomationRule,
    TriggerType,
)
from tests.factories import T0, lead_qualified_won, make_settings, move_rule, register


def _executive_review_pipeline() -> PipelineCreate:
    return PipelineCreate(
        id="enterprise",
        name="Enterprise",
        stages=[
            PipelineStage(id="lead", name="Lead", position=0, is_default=True),
            PipelineStage(id="qualified", name="Qualified", position=1, probability=30),
            PipelineStage(id="exec", name="Executive Review", position=2, probability=60),
            PipelineStage(id="won", name="Won", position=3, probability=100),
        ],
        is_active=True,
    )


def _large_deal_rule() -> StageAutomationRule:
    return StageAutomationRule(
        id="large-deal",
        name="Large deals need executive review",
        trigger=AutomationTrigger(type=TriggerType.VALUE_CHANGED),
        conditions=[
            AutomationCondition(
                field="value", operator=ConditionOperator.GREATER_THAN, value=100_000
            )
        ],
        actions=[
            AutomationAction(
                type=ActionType.MOVE_STAGE, configuration={"target_stage": "Executive Review"}
            )
        ],
    )


def _task_rule(rule_id: str = "follow-up", delay: int | None = 60) -> StageAutomationRule:
    return StageAutomationRule(
        id=rule_id,
        name="Follow up after qualification",
        trigger=AutomationTrigger(
            type=TriggerType.STAGE_CHANGED, configuration={"to_stage": "qualified"}
        ),
        actions=[
            AutomationAction(
                type=ActionType.CREATE_TASK,
                configuration={"title": "Book discovery call"},
                delay=delay,
            )
        ],
    )


# ── Manual moves ────────────────────────────────────────────────────────────


class TestManualMoves:
    """Manual stage changes and their ledger effects."""

    @pytest.mark.asyncio
    async def test_registration_places_opportunity(self, service, pipeline) -> None:
        opp = await register(service, "opp-1")
        history = await service.get_movement_history("default", "opp-1")
        assert opp.current_stage_id == "lead"
        assert opp.probability == 10
        assert [(m.from_stage_id, m.to_stage_id) for m in history] == [(None, "lead")]

    @pytest.mark.asyncio
    async def test_move_records_movement_and_probability(self, service, pipeline) -> None:
        await register(service, "opp-1")
        result = await service.move_opportunity("default", "opp-1", "Qualified", actor="rep-1")

        assert [(m.from_stage_id, m.to_stage_id) for m in result.movements] == [
            ("lead", "qualified")
        ]
        movement = result.movements[0]
        assert movement.actor == "rep-1"
        assert movement.automated is False
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.current_stage_id == "qualified"
        assert opp.probability == 40

    @pytest.mark.asyncio
    async def test_duplicate_stage_change_is_idempotent(self, service, pipeline) -> None:
        await service.add_rule("default", "sales", _task_rule(delay=None))
        await register(service, "opp-1")

        first = await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")
        second = await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")

        assert len(first.movements) == 1
        assert len(first.rule_executions) == 1
        assert second.duplicate is True
        assert second.movements == []
        assert second.rule_executions == []
        assert len(await service.get_movement_history("default", "opp-1")) == 2
        assert len(service.dispatcher.requests) == 1

    @pytest.mark.asyncio
    async def test_move_to_missing_stage_rejected(self, service, pipeline) -> None:
        await register(service, "opp-1")
        with pytest.raises(InvalidOperation):
            await service.move_opportunity("default", "opp-1", "negotiation", actor="rep-1")
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.current_stage_id == "lead"
        assert len(await service.get_movement_history("default", "opp-1")) == 1

    @pytest.mark.asyncio
    async def test_history_continuity_across_moves(self, service, pipeline) -> None:
        await register(service, "opp-1")
        for stage in ("qualified", "lead", "won"):
            await service.move_opportunity("default", "opp-1", stage, actor="rep-1")
        history = await service.get_movement_history("default", "opp-1")
        for previous, current in zip(history, history[1:]):
            assert previous.to_stage_id == current.from_stage_id
        assert history[-1].to_stage_id == "won"


# ── Cascades ────────────────────────────────────────────────────────────────


class TestCascadeLimit:
    """Automated move chains are bounded."""

    async def _cycle(self, service: PipelineService) -> None:
        await service.add_rule("default", "sales", move_rule("a", "qualified", to_stage="lead"))
        await service.add_rule("default", "sales", move_rule("b", "won", to_stage="qualified"))
        await service.add_rule("default", "sales", move_rule("c", "lead", to_stage="won"))

    @pytest.mark.asyncio
    async def test_cycle_aborts_after_limit(self, service, pipeline) -> None:
        await self._cycle(service)
        await register(service, "opp-1")

        result = await service.submit_event("default", TriggerType.STAGE_CHANGED, "opp-1")

        assert result.cascade_aborted is True
        assert "Cascade limit of 5" in result.error
        assert len(result.movements) == 5
        assert all(m.automated for m in result.movements)
        assert result.rule_executions[-1].status == RuleExecutionStatus.ABORTED

        history = await service.get_movement_history("default", "opp-1")
        automated = [m for m in history if m.automated]
        assert len(automated) == 5
        for previous, current in zip(history, history[1:]):
            assert previous.to_stage_id == current.from_stage_id
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.current_stage_id == history[-1].to_stage_id == "won"

    @pytest.mark.asyncio
    async def test_limit_is_configurable(self, clock) -> None:
        service = PipelineService(make_settings(CASCADE_LIMIT=2), clock=clock)
        await service.create_pipeline("default", lead_qualified_won())
        await self._cycle(service)
        await register(service, "opp-1")

        result = await service.submit_event("default", TriggerType.STAGE_CHANGED, "opp-1")
        assert result.cascade_aborted is True
        assert len(result.movements) == 2

    @pytest.mark.asyncio
    async def test_chain_within_limit_completes(self, service, pipeline) -> None:
        await service.add_rule("default", "sales", move_rule("a", "qualified", to_stage="lead"))
        await service.add_rule("default", "sales", move_rule("b", "won", to_stage="qualified"))
        await register(service, "opp-1")

        result = await service.submit_event("default", TriggerType.STAGE_CHANGED, "opp-1")
        assert result.cascade_aborted is False
        assert [m.to_stage_id for m in result.movements] == ["qualified", "won"]
        assert result.events_processed == 3


# ── Field updates ───────────────────────────────────────────────────────────


class TestValueChanged:
    """value_changed rules and typed field writes."""

    @pytest.mark.asyncio
    async def test_large_deal_moves_to_executive_review_once(self, service) -> None:
        await service.create_pipeline("default", _executive_review_pipeline())
        await service.add_rule("default", "enterprise", _large_deal_rule())
        await register(service, "opp-1", value=50_000)

        result = await service.update_opportunity_field(
            "default", "opp-1", "value", 150_000, actor="rep-1"
        )
        assert [(m.to_stage_id, m.automated) for m in result.movements] == [("exec", True)]
        assert result.movements[0].rule_id == "large-deal"

        again = await service.update_opportunity_field(
            "default", "opp-1", "value", 150_000, actor="rep-1"
        )
        assert again.movements == []
        assert again.rule_executions == []

        history = await service.get_movement_history("default", "opp-1")
        assert sum(1 for m in history if m.to_stage_id == "exec") == 1

    @pytest.mark.asyncio
    async def test_small_deal_does_not_move(self, service) -> None:
        await service.create_pipeline("default", _executive_review_pipeline())
        await service.add_rule("default", "enterprise", _large_deal_rule())
        await register(service, "opp-1", value=10_000)

        result = await service.update_opportunity_field(
            "default", "opp-1", "value", 90_000, actor="rep-1"
        )
        assert result.movements == []
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.value == 90_000
        assert opp.current_stage_id == "lead"

    @pytest.mark.asyncio
    async def test_invalid_write_rejected_without_change(self, service, pipeline) -> None:
        await register(service, "opp-1")
        with pytest.raises(ValidationError):
            await service.update_opportunity_field(
                "default", "opp-1", "probability", 150, actor="rep-1"
            )
        with pytest.raises(ValidationError):
            await service.update_opportunity_field(
                "default", "opp-1", "current_stage_id", "won", actor="rep-1"
            )
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.probability == 10
        assert opp.current_stage_id == "lead"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("probability", "nan"),
            ("probability", float("nan")),
            ("value", "inf"),
            ("value", float("-inf")),
        ],
    )
    @pytest.mark.asyncio
    async def test_non_finite_numbers_rejected(self, service, pipeline, field, value) -> None:
        await register(service, "opp-1", value=5000.0)
        with pytest.raises(ValidationError, match="finite"):
            await service.update_opportunity_field("default", "opp-1", field, value, actor="rep-1")

        opp = await service.get_opportunity("default", "opp-1")
        assert opp.probability == 10
        assert opp.value == 5000.0

    @pytest.mark.parametrize(
        "fields",
        [{"value": float("nan")}, {"value": float("inf")}, {"probability": float("nan")}],
    )
    def test_non_finite_numbers_rejected_at_registration(self, fields) -> None:
        with pytest.raises(PydanticValidationError):
            OpportunityCreate(id="opp-1", **fields)

    @pytest.mark.asyncio
    async def test_failed_action_does_not_stop_other_rules(self, service, pipeline) -> None:
        broken = StageAutomationRule(
            id="broken",
            name="Write undeclared field",
            trigger=AutomationTrigger(type=TriggerType.FIELD_UPDATED),
            actions=[
                AutomationAction(
                    type=ActionType.UPDATE_FIELD,
                    configuration={"field": "custom_fields.segment", "value": "A"},
                )
            ],
        )
        ok = StageAutomationRule(
            id="ok",
            name="Bump probability",
            trigger=AutomationTrigger(type=TriggerType.FIELD_UPDATED),
            actions=[
                AutomationAction(
                    type=ActionType.UPDATE_PROBABILITY, configuration={"probability": 55}
                )
            ],
        )
        await service.add_rule("default", "sales", broken)
        await service.add_rule("default", "sales", ok)
        await register(service, "opp-1")

        result = await service.update_opportunity_field(
            "default", "opp-1", "industry", "Retail", actor="rep-1"
        )
        statuses = {e.rule_id: e.status for e in result.rule_executions}
        assert statuses == {
            "broken": RuleExecutionStatus.FAILED,
            "ok": RuleExecutionStatus.COMPLETED,
        }
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.probability == 55


# ── Concurrency ─────────────────────────────────────────────────────────────


class _YieldingDispatcher(InMemoryDispatcher):
    """Suspends inside every dispatch so other coroutines get to run."""

    async def dispatch(self, request) -> None:
        await asyncio.sleep(0.01)
        await super().dispatch(request)


def _notify_then_qualify_rule() -> StageAutomationRule:
    return StageAutomationRule(
        id="owner-assigned",
        name="Qualify once an owner is assigned",
        trigger=AutomationTrigger(
            type=TriggerType.FIELD_UPDATED, configuration={"field": "owner_id"}
        ),
        actions=[
            AutomationAction(
                type=ActionType.NOTIFY_USER,
                configuration={"user_id": "sales-ops", "message": "Owner assigned"},
            ),
            AutomationAction(
                type=ActionType.MOVE_STAGE, configuration={"target_stage": "qualified"}
            ),
        ],
    )


class TestConcurrentWriters:
    """Automated and manual writes to one opportunity never interleave."""

    @pytest.mark.asyncio
    async def test_rule_move_and_manual_move_serialize(self, settings, clock) -> None:
        service = PipelineService(settings, dispatcher=_YieldingDispatcher(), clock=clock)
        await service.create_pipeline("default", lead_qualified_won())
        await service.add_rule("default", "sales", _notify_then_qualify_rule())
        await register(service, "opp-1")

        field_result, move_result = await asyncio.gather(
            service.update_opportunity_field("default", "opp-1", "owner_id", "rep-2", "rep-1"),
            service.move_opportunity("default", "opp-1", "won", actor="rep-1"),
        )

        assert [m.to_stage_id for m in field_result.movements] == ["qualified"]
        assert [(m.from_stage_id, m.to_stage_id) for m in move_result.movements] == [
            ("qualified", "won")
        ]

        history = await service.get_movement_history("default", "opp-1")
        assert [m.to_stage_id for m in history] == ["lead", "qualified", "won"]
        for previous, current in zip(history, history[1:]):
            assert previous.to_stage_id == current.from_stage_id
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.current_stage_id == history[-1].to_stage_id
        assert opp.owner_id == "rep-2"

    @pytest.mark.asyncio
    async def test_many_writers_keep_ledger_continuous(self, settings, clock) -> None:
        service = PipelineService(settings, dispatcher=_YieldingDispatcher(), clock=clock)
        await service.create_pipeline("default", lead_qualified_won())
        await service.add_rule("default", "sales", _notify_then_qualify_rule())
        await register(service, "opp-1")

        await asyncio.gather(
            service.move_opportunity("default", "opp-1", "won", actor="rep-1"),
            service.update_opportunity_field("default", "opp-1", "owner_id", "rep-2", "rep-1"),
            service.move_opportunity("default", "opp-1", "lead", actor="rep-3"),
            service.update_opportunity_field("default", "opp-1", "owner_id", "rep-4", "rep-3"),
        )

        history = await service.get_movement_history("default", "opp-1")
        for previous, current in zip(history, history[1:]):
            assert previous.to_stage_id == current.from_stage_id
            assert previous.timestamp <= current.timestamp
        opp = await service.get_opportunity("default", "opp-1")
        assert opp.current_stage_id == history[-1].to_stage_id
        assert opp.owner_id == "rep-4"


# ── Delayed actions ─────────────────────────────────────────────────────────


class TestDelayedActions:
    """Deferred action lists and cancellation."""

    @pytest.mark.asyncio
    async def test_delayed_action_runs_when_due(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _task_rule())
        await register(service, "opp-1", owner_id="rep-9")

        result = await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")
        assert result.rule_executions[0].status == RuleExecutionStatus.DEFERRED
        state = await service.get_rule_state("default", "sales", "follow-up", "opp-1")
        assert state == RuleState.COOLING_DOWN

        clock.advance(minutes=30)
        assert await service.run_due_actions() == []

        clock.advance(minutes=31)
        results = await service.run_due_actions()
        assert len(results) == 1
        assert results[0].rule_executions[0].status == RuleExecutionStatus.COMPLETED

        [request] = service.dispatcher.requests
        assert request.type.value == "task"
        assert request.target == "rep-9"
        assert request.payload["title"] == "Book discovery call"

        config = await service.get_pipeline("default", "sales")
        rule, _stage = config.find_rule("follow-up")
        assert rule.execution_count == 1
        assert await service.get_rule_state("default", "sales", "follow-up", "opp-1") == (
            RuleState.ARMED
        )

    @pytest.mark.asyncio
    async def test_deactivation_cancels_pending_action(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _task_rule())
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")
        assert len(service.scheduler) == 1

        await service.set_rule_active("default", "sales", "follow-up", False)
        assert len(service.scheduler) == 0

        clock.advance(hours=2)
        assert await service.run_due_actions() == []
        assert service.dispatcher.requests == []
        state = await service.get_rule_state("default", "sales", "follow-up", "opp-1")
        assert state == RuleState.INACTIVE

    @pytest.mark.asyncio
    async def test_deleting_rule_cancels_pending_action(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _task_rule())
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")

        await service.delete_rule("default", "sales", "follow-up")
        clock.advance(hours=2)
        assert await service.run_due_actions() == []
        assert service.dispatcher.requests == []

    @pytest.mark.asyncio
    async def test_deferred_move_is_noop_when_already_past(
        self, service, pipeline, clock
    ) -> None:
        await service.add_rule(
            "default", "sales", move_rule("auto-win", "won", delay=30, to_stage="qualified")
        )
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")
        clock.advance(minutes=5)
        await service.move_opportunity("default", "opp-1", "won", actor="rep-1")

        clock.advance(minutes=30)
        [result] = await service.run_due_actions()
        assert result.movements == []
        assert result.rule_executions[0].outcomes[0].status == ActionStatus.SKIPPED
        history = await service.get_movement_history("default", "opp-1")
        assert [m.automated for m in history] == [False, False, False]

    @pytest.mark.asyncio
    async def test_deferred_move_applies_and_cascades(self, service, pipeline, clock) -> None:
        await service.add_rule(
            "default", "sales", move_rule("auto-win", "won", delay=30, to_stage="qualified")
        )
        await service.add_rule(
            "default",
            "sales",
            StageAutomationRule(
                id="congrats",
                name="Notify on win",
                trigger=AutomationTrigger(
                    type=TriggerType.STAGE_CHANGED, configuration={"to_stage": "won"}
                ),
                actions=[
                    AutomationAction(
                        type=ActionType.NOTIFY_USER,
                        configuration={"user_id": "manager", "message": "Deal won"},
                    )
                ],
            ),
        )
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")

        clock.advance(minutes=30)
        [result] = await service.run_due_actions()
        assert [m.to_stage_id for m in result.movements] == ["won"]
        assert [r.target for r in service.dispatcher.requests] == ["manager"]


# ── Exit criteria ───────────────────────────────────────────────────────────


class TestExitCriteria:
    """Required fields gate forward moves according to the policy."""

    def _pipeline(self) -> PipelineCreate:
        data = lead_qualified_won()
        data.stages[1].required_fields = ["owner_id"]
        return data

    @pytest.mark.asyncio
    async def test_strict_policy_blocks_forward_move(self, clock) -> None:
        service = PipelineService(
            make_settings(EXIT_CRITERIA_POLICY=ExitCriteriaPolicy.strict), clock=clock
        )
        await service.create_pipeline("default", self._pipeline())
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")

        with pytest.raises(ExitCriteriaNotMet) as exc_info:
            await service.move_opportunity("default", "opp-1", "won", actor="rep-1")
        assert exc_info.value.missing_fields == ["owner_id"]
        assert (await service.get_opportunity("default", "opp-1")).current_stage_id == "qualified"

        # Backward moves are not gated
        await service.move_opportunity("default", "opp-1", "lead", actor="rep-1")

    @pytest.mark.asyncio
    async def test_advisory_policy_flags_movement(self, service) -> None:
        await service.create_pipeline("default", self._pipeline())
        await register(service, "opp-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")

        result = await service.move_opportunity("default", "opp-1", "won", actor="rep-1")
        assert result.movements[0].advisory_flags == ("missing_required_field:owner_id",)

    @pytest.mark.asyncio
    async def test_filled_fields_pass(self, clock) -> None:
        service = PipelineService(
            make_settings(EXIT_CRITERIA_POLICY=ExitCriteriaPolicy.strict), clock=clock
        )
        await service.create_pipeline("default", self._pipeline())
        await register(service, "opp-1", owner_id="rep-1")
        await service.move_opportunity("default", "opp-1", "qualified", actor="rep-1")
        result = await service.move_opportunity("default", "opp-1", "won", actor="rep-1")
        assert result.movements[0].advisory_flags == ()


# ── Side effects and other triggers ─────────────────────────────────────────


class TestSideEffects:
    """Dispatch failures are reported, never raised."""

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_stop_later_actions(self, clock) -> None:
        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = RuntimeError("smtp down")
        service = PipelineService(make_settings(), dispatcher=dispatcher, clock=clock)
        await service.create_pipeline("default", lead_qualified_won())
        await service.add_rule(
            "default",
            "sales",
            StageAutomationRule(
                id="welcome",
                name="Welcome",
                trigger=AutomationTrigger(type=TriggerType.DEAL_CREATED),
                actions=[
                    AutomationAction(
                        type=ActionType.SEND_EMAIL,
                        configuration={"to": "buyer@example.com", "subject": "Hello"},
                    ),
                    AutomationAction(
                        type=ActionType.UPDATE_PROBABILITY, configuration={"probability": 20}
                    ),
                ],
            ),
        )

        opp, result = await service.register_opportunity(
            "default", OpportunityCreate(id="opp-1", value=1000)
        )
        outcomes = result.rule_executions[0].outcomes
        assert [o.status for o in outcomes] == [ActionStatus.DISPATCH_FAILED, ActionStatus.APPLIED]
        assert "smtp down" in outcomes[0].detail
        assert opp.probability == 20
        dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_idempotency_key_per_origin_rule_and_action(self, service, pipeline) -> None:
        await service.add_rule(
            "default",
            "sales",
            StageAutomationRule(
                id="welcome",
                name="Welcome",
                trigger=AutomationTrigger(type=TriggerType.DEAL_CREATED),
                actions=[
                    AutomationAction(
                        type=ActionType.WEBHOOK, configuration={"url": "https://hooks.test/a"}
                    ),
                    AutomationAction(
                        type=ActionType.WEBHOOK, configuration={"url": "https://hooks.test/b"}
                    ),
                ],
            ),
        )
        _opp, result = await service.register_opportunity("default", OpportunityCreate(id="o1"))
        keys = [r.idempotency_key for r in service.dispatcher.requests]
        assert keys == [f"{result.event_id}:welcome:0", f"{result.event_id}:welcome:1"]


def _closing_soon_rule() -> StageAutomationRule:
    return StageAutomationRule(
        id="closing-soon",
        name="Closing soon",
        trigger=AutomationTrigger(
            type=TriggerType.DATE_REACHED,
            configuration={"field": "expected_close_date", "days_before": 7},
        ),
        actions=[
            AutomationAction(
                type=ActionType.UPDATE_PROBABILITY, configuration={"probability": 70}
            )
        ],
    )


class TestDateReached:
    """tick() fires due date rules once per target date."""

    @pytest.mark.asyncio
    async def test_date_rule_fires_once(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _closing_soon_rule())
        await register(service, "opp-1", expected_close_date=T0 + timedelta(days=10))

        assert await service.tick() == []

        clock.advance(days=3, minutes=1)
        results = await service.tick()
        assert len(results) == 1
        assert (await service.get_opportunity("default", "opp-1")).probability == 70

        clock.advance(hours=1)
        assert await service.tick() == []

    @pytest.mark.asyncio
    async def test_new_close_date_fires_again(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _closing_soon_rule())
        await register(service, "opp-1", expected_close_date=T0 + timedelta(days=7))
        assert len(await service.tick()) == 1

        await service.update_opportunity_field(
            "default", "opp-1", "expected_close_date", T0 + timedelta(days=8), actor="rep-1"
        )
        assert await service.tick() == []

        clock.advance(days=1)
        assert len(await service.tick()) == 1
        assert len(service.engine._fired_dates) == 1

    @pytest.mark.asyncio
    async def test_disabled_rule_forgets_fired_dates(self, service, pipeline, clock) -> None:
        await service.add_rule("default", "sales", _closing_soon_rule())
        await register(service, "opp-1", expected_close_date=T0 + timedelta(days=7))
        assert len(await service.tick()) == 1

        await service.set_rule_active("default", "sales", "closing-soon", False)
        assert service.engine._fired_dates == {}
        assert await service.tick() == []

        await service.set_rule_active("default", "sales", "closing-soon", True)
        assert len(await service.tick()) == 1

        await service.delete_rule("default", "sales", "closing-soon")
        assert service.engine._fired_dates == {}
