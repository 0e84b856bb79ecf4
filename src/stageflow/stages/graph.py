"""Stage graph maintenance and write-time validation.

StageGraph works on its own deep copy of a pipeline's stage list. Every
mutation renumbers positions to 0..n-1 in list order, so after any add,
remove or reorder the positions are unique and contiguous. The
configuration store commits the copy back only after ``validate_graph``
passes; a rejected change leaves the stored configuration untouched.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from src.stageflow.core.clock import utc_now
from src.stageflow.core.errors import InvalidOperation, NotFoundError, ValidationError
from src.stageflow.opportunities.fields import resolve_field
from src.stageflow.opportunities.schemas import OpportunityField
from src.stageflow.stages.schemas import (
    REQUIRED_ACTION_KEYS,
    UNARY_OPERATORS,
    ActionType,
    PipelineStage,
    StageAutomationRule,
    TriggerType,
)


def _renumber(stages: list[PipelineStage], now: datetime) -> None:
    for position, stage in enumerate(stages):
        if stage.position != position:
            stage.position = position
            stage.updated_at = now


class StageGraph:
    """Ordered, contiguously numbered list of pipeline stages."""

    def __init__(self, stages: Iterable[PipelineStage], now: datetime | None = None) -> None:
        self._stages = [s.model_copy(deep=True) for s in sorted(stages, key=lambda s: s.position)]
        self._now = now or utc_now()

    @property
    def stages(self) -> list[PipelineStage]:
        return list(self._stages)

    def index_of(self, stage_id: str) -> int:
        for index, stage in enumerate(self._stages):
            if stage.id == stage_id:
                return index
        raise NotFoundError(f"Stage '{stage_id}' not found")

    def add_stage(self, stage: PipelineStage, position: int | None = None) -> list[PipelineStage]:
        """Insert ``stage`` at ``position`` (append when None) and renumber.

        Raises:
            ValidationError: If a stage with the same id already exists or
                the position is out of range.
        """
        if any(s.id == stage.id for s in self._stages):
            raise ValidationError(f"Stage id '{stage.id}' already exists")
        if position is None:
            position = len(self._stages)
        if position < 0 or position > len(self._stages):
            raise ValidationError(
                f"Position {position} out of range 0..{len(self._stages)}"
            )

        new_stage = stage.model_copy(deep=True)
        new_stage.updated_at = self._now
        self._stages.insert(position, new_stage)
        _renumber(self._stages, self._now)
        return self.stages

    def remove_stage(self, stage_id: str) -> list[PipelineStage]:
        """Remove a stage and close the gap in positions.

        Ledger history that references the stage is left alone.

        Raises:
            NotFoundError: If the stage does not exist.
            InvalidOperation: If the stage is the pipeline's default stage.
        """
        index = self.index_of(stage_id)
        if self._stages[index].is_default:
            raise InvalidOperation(f"Stage '{stage_id}' is the default stage and cannot be removed")
        del self._stages[index]
        _renumber(self._stages, self._now)
        return self.stages

    def reorder_stages(self, new_order: Sequence[str]) -> list[PipelineStage]:
        """Return copies of the stages in ``new_order`` with positions 0..n-1.

        Does not modify this graph.

        Raises:
            ValidationError: If ``new_order`` is not a permutation of the
                current stage ids.
        """
        current_ids = [s.id for s in self._stages]
        if len(new_order) != len(current_ids) or sorted(new_order) != sorted(current_ids):
            raise ValidationError(
                "Stage order must list every existing stage id exactly once",
                problems=[
                    f"expected ids {sorted(current_ids)}",
                    f"got {list(new_order)}",
                ],
            )

        by_id = {s.id: s for s in self._stages}
        reordered = [by_id[stage_id].model_copy(deep=True) for stage_id in new_order]
        _renumber(reordered, self._now)
        return reordered

    def validate_graph(self) -> None:
        """Check the graph invariants, reporting every violation at once."""
        validate_stages(self._stages)


def validate_stages(stages: Sequence[PipelineStage]) -> None:
    """Raise ValidationError listing every stage graph problem found."""
    problems: list[str] = []

    if not stages:
        problems.append("pipeline must have at least one stage")

    seen_ids: set[str] = set()
    for stage in stages:
        if stage.id in seen_ids:
            problems.append(f"duplicate stage id '{stage.id}'")
        seen_ids.add(stage.id)
        if not stage.name.strip():
            problems.append(f"stage '{stage.id}' has an empty name")
        if not 0 <= stage.probability <= 100:
            problems.append(
                f"stage '{stage.id}' probability {stage.probability} outside 0-100"
            )

    positions = [s.position for s in stages]
    if len(set(positions)) != len(positions):
        problems.append("duplicate stage positions")
    elif sorted(positions) != list(range(len(positions))):
        problems.append(f"stage positions {sorted(positions)} are not contiguous from 0")

    if sum(1 for s in stages if s.is_default) > 1:
        problems.append("more than one default stage")

    if problems:
        raise ValidationError("; ".join(problems), problems=problems)


def _stage_known(ref: object, stages: Sequence[PipelineStage]) -> bool:
    if not isinstance(ref, str):
        return False
    wanted = ref.strip().lower()
    return any(s.id == ref or s.name.strip().lower() == wanted for s in stages)


def validate_rule(rule: StageAutomationRule, stages: Sequence[PipelineStage]) -> None:
    """Shape checks for an automation rule against the pipeline's stages.

    Raises:
        ValidationError: Listing every problem found.
    """
    problems: list[str] = []
    config = rule.trigger.configuration

    if not rule.name.strip():
        problems.append("rule name is empty")

    if rule.trigger.type == TriggerType.STAGE_CHANGED:
        for key in ("from_stage", "to_stage"):
            if key in config and not _stage_known(config[key], stages):
                problems.append(f"trigger {key} '{config[key]}' is not a stage of this pipeline")
    elif rule.trigger.type == TriggerType.DATE_REACHED:
        if "date" not in config and "field" not in config:
            problems.append("date_reached trigger needs a 'date' or a 'field'")
        days_before = config.get("days_before", 0)
        if isinstance(days_before, bool) or not isinstance(days_before, (int, float)):
            problems.append("date_reached days_before must be a number")

    for index, condition in enumerate(rule.conditions):
        if condition.operator not in UNARY_OPERATORS and condition.value is None:
            problems.append(
                f"condition {index} ({condition.field} {condition.operator.value}) needs a value"
            )

    for index, action in enumerate(rule.actions):
        missing = [
            key for key in REQUIRED_ACTION_KEYS[action.type] if key not in action.configuration
        ]
        if missing:
            problems.append(
                f"action {index} ({action.type.value}) missing configuration: {', '.join(missing)}"
            )
            continue

        if action.type == ActionType.MOVE_STAGE:
            target = action.configuration["target_stage"]
            if not _stage_known(target, stages):
                problems.append(f"action {index} target stage '{target}' does not exist")
        elif action.type == ActionType.UPDATE_FIELD:
            known, _ = resolve_field(str(action.configuration["field"]))
            if known == OpportunityField.STAGE:
                problems.append(
                    f"action {index} cannot write {known.value}; use move_stage instead"
                )
        elif action.type == ActionType.UPDATE_PROBABILITY:
            probability = action.configuration["probability"]
            if (
                isinstance(probability, bool)
                or not isinstance(probability, (int, float))
                or not 0 <= probability <= 100
            ):
                problems.append(f"action {index} probability must be a number in 0-100")

    if problems:
        raise ValidationError(
            f"Invalid rule '{rule.name}': " + "; ".join(problems), problems=problems
        )
