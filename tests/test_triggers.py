"""Unit tests for trigger matching.

Tests cover:
- stage_changed from/to filters by stage id or name
- value_changed and field_updated only match real changes
- date_reached targets from an absolute date or a field minus days_before
- manual triggers scoped by rule id
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.stageflow.automation.schemas import AutomationEvent
from src.stageflow.automation.triggers import date_trigger_target, trigger_matches, values_differ
from src.stageflow.opportunities.schemas import Opportunity
from src.stageflow.stages.schemas import (
    AutomationTrigger,
    PipelineConfiguration,
    StageAutomationRule,
    TriggerType,
)
from tests.factories import T0, lead_qualified_won


@pytest.fixture
def config() -> PipelineConfiguration:
    return PipelineConfiguration(**lead_qualified_won().model_dump(exclude_none=True))


@pytest.fixture
def opportunity() -> Opportunity:
    return Opportunity(
        id="opp-1",
        pipeline_id="sales",
        current_stage_id="qualified",
        expected_close_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
    )


def _rule(trigger: TriggerType, rule_id: str = "r1", **configuration) -> StageAutomationRule:
    return StageAutomationRule(
        id=rule_id,
        name=rule_id,
        trigger=AutomationTrigger(type=trigger, configuration=configuration),
    )


def _event(trigger: TriggerType, occurred_at: datetime = T0, **payload) -> AutomationEvent:
    return AutomationEvent(
        type=trigger, opportunity_id="opp-1", payload=payload, occurred_at=occurred_at
    )


class TestStageChanged:
    """stage_changed filters."""

    def test_type_mismatch(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED)
        assert not trigger_matches(rule, _event(TriggerType.VALUE_CHANGED), opportunity, config)

    def test_unfiltered_matches_any_move(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED)
        event = _event(TriggerType.STAGE_CHANGED, from_stage_id="lead", to_stage_id="qualified")
        assert trigger_matches(rule, event, opportunity, config)

    def test_to_stage_by_name(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED, to_stage="Qualified")
        event = _event(TriggerType.STAGE_CHANGED, from_stage_id="lead", to_stage_id="qualified")
        assert trigger_matches(rule, event, opportunity, config)

    def test_to_stage_mismatch(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED, to_stage="won")
        event = _event(TriggerType.STAGE_CHANGED, from_stage_id="lead", to_stage_id="qualified")
        assert not trigger_matches(rule, event, opportunity, config)

    def test_to_stage_falls_back_to_current_stage(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED, to_stage="qualified")
        assert trigger_matches(rule, _event(TriggerType.STAGE_CHANGED), opportunity, config)

    def test_from_stage_requires_known_origin(self, config, opportunity) -> None:
        rule = _rule(TriggerType.STAGE_CHANGED, from_stage="lead")
        assert not trigger_matches(rule, _event(TriggerType.STAGE_CHANGED), opportunity, config)
        event = _event(TriggerType.STAGE_CHANGED, from_stage_id="lead", to_stage_id="qualified")
        assert trigger_matches(rule, event, opportunity, config)


class TestValueAndField:
    """Change-based triggers."""

    def test_value_changed_requires_change(self, config, opportunity) -> None:
        rule = _rule(TriggerType.VALUE_CHANGED)
        changed = _event(TriggerType.VALUE_CHANGED, field="value", old_value=10, new_value=20)
        same = _event(TriggerType.VALUE_CHANGED, field="value", old_value=20, new_value=20.0)
        assert trigger_matches(rule, changed, opportunity, config)
        assert not trigger_matches(rule, same, opportunity, config)

    def test_field_updated_filter(self, config, opportunity) -> None:
        rule = _rule(TriggerType.FIELD_UPDATED, field="industry")
        other = _event(TriggerType.FIELD_UPDATED, field="title", old_value="a", new_value="b")
        match = _event(TriggerType.FIELD_UPDATED, field="industry", old_value=None, new_value="Tech")
        assert not trigger_matches(rule, other, opportunity, config)
        assert trigger_matches(rule, match, opportunity, config)

    def test_values_differ(self) -> None:
        assert values_differ(None, "x")
        assert not values_differ("5", 5)
        assert values_differ("a", "b")


class TestDateReached:
    """date_reached targets."""

    def test_absolute_date(self, opportunity) -> None:
        rule = _rule(TriggerType.DATE_REACHED, date="2026-01-10T00:00:00Z")
        assert date_trigger_target(rule, opportunity) == datetime(2026, 1, 10, tzinfo=timezone.utc)

    def test_field_minus_days_before(self, opportunity) -> None:
        rule = _rule(TriggerType.DATE_REACHED, field="expected_close_date", days_before=7)
        assert date_trigger_target(rule, opportunity) == datetime(2026, 1, 25, tzinfo=timezone.utc)

    def test_missing_field_has_no_target(self, opportunity) -> None:
        rule = _rule(TriggerType.DATE_REACHED, field="custom_fields.renewal_date")
        assert date_trigger_target(rule, opportunity) is None

    def test_matches_only_once_due(self, config, opportunity) -> None:
        rule = _rule(TriggerType.DATE_REACHED, field="expected_close_date", days_before=7)
        due = datetime(2026, 1, 25, tzinfo=timezone.utc)
        early = _event(TriggerType.DATE_REACHED, occurred_at=due - timedelta(hours=1))
        on_time = _event(TriggerType.DATE_REACHED, occurred_at=due)
        assert not trigger_matches(rule, early, opportunity, config)
        assert trigger_matches(rule, on_time, opportunity, config)

    def test_scoped_to_rule_id(self, config, opportunity) -> None:
        rule = _rule(TriggerType.DATE_REACHED, date="2026-01-01T00:00:00Z")
        event = _event(TriggerType.DATE_REACHED, rule_id="other-rule")
        assert not trigger_matches(rule, event, opportunity, config)


class TestManual:
    def test_manual_rule_id_scope(self, config, opportunity) -> None:
        rule = _rule(TriggerType.MANUAL)
        assert trigger_matches(rule, _event(TriggerType.MANUAL), opportunity, config)
        assert trigger_matches(rule, _event(TriggerType.MANUAL, rule_id="r1"), opportunity, config)
        assert not trigger_matches(
            rule, _event(TriggerType.MANUAL, rule_id="r2"), opportunity, config
        )
