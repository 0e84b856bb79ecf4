"""Pydantic schemas for pipeline configuration and automation rules.

Defines all structured types for the stage graph:
- Enums: TriggerType, ConditionOperator, LogicalOperator, ActionType
- Rules: AutomationTrigger, AutomationCondition, AutomationAction, StageAutomationRule
- Graph: PipelineStage, PipelineConfiguration

Stage movements reference stages by id, never by position, so positions
can be renumbered without invalidating history.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.stageflow.core.clock import utc_now
from src.stageflow.opportunities.schemas import FieldDefinition


# ── Enums ───────────────────────────────────────────────────────────────────


class TriggerType(str, Enum):
    """Event types a rule can be armed for."""

    DEAL_CREATED = "deal_created"
    STAGE_CHANGED = "stage_changed"
    VALUE_CHANGED = "value_changed"
    FIELD_UPDATED = "field_updated"
    DATE_REACHED = "date_reached"
    MANUAL = "manual"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


# Operators that ignore the condition's ``value``.
UNARY_OPERATORS = {ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY}


class LogicalOperator(str, Enum):
    """Joins a condition to the next one in the list."""

    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    MOVE_STAGE = "move_stage"
    UPDATE_FIELD = "update_field"
    UPDATE_PROBABILITY = "update_probability"
    CREATE_TASK = "create_task"
    SEND_EMAIL = "send_email"
    NOTIFY_USER = "notify_user"
    WEBHOOK = "webhook"


# Action kinds handed to the external dispatcher.
SIDE_EFFECT_ACTIONS = {
    ActionType.CREATE_TASK,
    ActionType.SEND_EMAIL,
    ActionType.NOTIFY_USER,
    ActionType.WEBHOOK,
}

# Configuration keys each action kind must carry.
REQUIRED_ACTION_KEYS: dict[ActionType, tuple[str, ...]] = {
    ActionType.MOVE_STAGE: ("target_stage",),
    ActionType.UPDATE_FIELD: ("field", "value"),
    ActionType.UPDATE_PROBABILITY: ("probability",),
    ActionType.CREATE_TASK: ("title",),
    ActionType.SEND_EMAIL: ("to", "subject"),
    ActionType.NOTIFY_USER: ("user_id", "message"),
    ActionType.WEBHOOK: ("url",),
}


# ── Rules ───────────────────────────────────────────────────────────────────


class AutomationTrigger(BaseModel):
    """What makes a rule eligible for evaluation.

    Configuration keys by type:
    - stage_changed: optional ``from_stage`` / ``to_stage`` stage ids
    - field_updated: optional ``field``
    - date_reached: ``date`` (ISO instant) or ``field`` plus optional ``days_before``
    """

    type: TriggerType
    configuration: dict[str, Any] = Field(default_factory=dict)


class AutomationCondition(BaseModel):
    """Predicate over one opportunity field."""

    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND


class AutomationAction(BaseModel):
    """One step of a rule's action list."""

    type: ActionType
    configuration: dict[str, Any] = Field(default_factory=dict)
    delay: int | None = Field(
        default=None, ge=0, description="Minutes to wait before this and later actions run"
    )


class StageAutomationRule(BaseModel):
    """Flat automation rule: one trigger, a condition list, an ordered action list.

    ``execution_count`` only ever grows; it is incremented once per
    execution (see AutomationEngine bookkeeping).
    """

    id: str = Field(default_factory=lambda: f"rule-{uuid.uuid4().hex[:12]}")
    name: str
    description: str = ""
    trigger: AutomationTrigger
    conditions: list[AutomationCondition] = Field(default_factory=list)
    actions: list[AutomationAction] = Field(default_factory=list)
    is_active: bool = True
    execution_count: int = Field(default=0, ge=0)
    last_executed: datetime | None = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)


# Pipeline-wide rules are the same shape as stage rules.
WorkflowAutomation = StageAutomationRule


# ── Stage Graph ─────────────────────────────────────────────────────────────


class PipelineStage(BaseModel):
    """One ordered step of a pipeline.

    ``required_fields`` are the exit criteria checked when an opportunity
    leaves this stage. Probability bounds are enforced by the stage graph at
    write time rather than here, so a bad value is reported with every other
    graph problem.
    """

    id: str = Field(default_factory=lambda: f"stage-{uuid.uuid4().hex[:8]}")
    name: str
    description: str = ""
    position: int = 0
    probability: float = 0.0
    is_default: bool = False
    automation_rules: list[StageAutomationRule] = Field(default_factory=list)
    required_fields: list[str] = Field(default_factory=list)
    exit_criteria: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


def transition_key(from_stage_id: str, to_stage_id: str) -> str:
    """Key used in ``conversion_targets`` for a stage-to-stage transition."""
    return f"{from_stage_id}->{to_stage_id}"


class PipelineConfiguration(BaseModel):
    """An ordered stage graph with its targets and automation rules."""

    id: str = Field(default_factory=lambda: f"pipeline-{uuid.uuid4().hex[:8]}")
    tenant_id: str = "default"
    name: str
    description: str = ""
    stages: list[PipelineStage] = Field(default_factory=list)
    automations: list[StageAutomationRule] = Field(default_factory=list)
    default_probabilities: dict[str, float] = Field(default_factory=dict)
    sales_cycle_targets: dict[str, float] = Field(
        default_factory=dict, description="Target dwell days per stage id"
    )
    conversion_targets: dict[str, float] = Field(
        default_factory=dict, description="Target conversion % per transition_key()"
    )
    field_definitions: list[FieldDefinition] = Field(default_factory=list)
    is_active: bool = False
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def ordered_stages(self) -> list[PipelineStage]:
        return sorted(self.stages, key=lambda s: s.position)

    def stage_by_id(self, stage_id: str) -> PipelineStage | None:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def resolve_stage(self, ref: str) -> PipelineStage | None:
        """Find a stage by id, falling back to a case-insensitive name match."""
        stage = self.stage_by_id(ref)
        if stage is not None:
            return stage
        wanted = ref.strip().lower()
        for candidate in self.ordered_stages():
            if candidate.name.strip().lower() == wanted:
                return candidate
        return None

    def next_stage(self, stage_id: str) -> PipelineStage | None:
        stage = self.stage_by_id(stage_id)
        if stage is None:
            return None
        later = [s for s in self.ordered_stages() if s.position > stage.position]
        return later[0] if later else None

    def is_terminal(self, stage_id: str) -> bool:
        return self.stage_by_id(stage_id) is not None and self.next_stage(stage_id) is None

    def dwell_target(self, stage_id: str) -> float | None:
        return self.sales_cycle_targets.get(stage_id)

    def conversion_target(self, stage_id: str) -> float | None:
        """Target conversion % from ``stage_id`` into the next stage by position."""
        nxt = self.next_stage(stage_id)
        if nxt is None:
            return None
        return self.conversion_targets.get(transition_key(stage_id, nxt.id))

    def all_rules(self) -> list[tuple[StageAutomationRule, PipelineStage | None]]:
        """Every rule with the stage it is scoped to (None for pipeline-wide)."""
        rules: list[tuple[StageAutomationRule, PipelineStage | None]] = [
            (rule, None) for rule in self.automations
        ]
        for stage in self.ordered_stages():
            rules.extend((rule, stage) for rule in stage.automation_rules)
        return rules

    def find_rule(
        self, rule_id: str
    ) -> tuple[StageAutomationRule, PipelineStage | None] | None:
        for rule, stage in self.all_rules():
            if rule.id == rule_id:
                return rule, stage
        return None

    def custom_field_definitions(self) -> dict[str, FieldDefinition]:
        return {d.name: d for d in self.field_definitions}


class PipelineCreate(BaseModel):
    """Payload for creating a pipeline configuration."""

    id: str | None = None
    name: str
    description: str = ""
    stages: list[PipelineStage] = Field(default_factory=list)
    automations: list[StageAutomationRule] = Field(default_factory=list)
    default_probabilities: dict[str, float] = Field(default_factory=dict)
    sales_cycle_targets: dict[str, float] = Field(default_factory=dict)
    conversion_targets: dict[str, float] = Field(default_factory=dict)
    field_definitions: list[FieldDefinition] = Field(default_factory=list)
    is_active: bool = False
    created_by: str = "system"
