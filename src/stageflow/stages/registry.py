"""Configuration store for pipelines, stages and automation rules.

Every write validates the resulting configuration before it is committed:
a change that would break a stage graph or rule invariant is rejected and
the stored configuration stays as it was. Readers receive deep copies, so
the engine always works on an explicit configuration value rather than a
shared mutable object.

Exactly one configuration per tenant is active. Activating one deactivates
the others; "active" is a flag read through ``get_active``, never a global.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.stageflow.core.clock import Clock, utc_now
from src.stageflow.core.errors import NotFoundError, ValidationError
from src.stageflow.stages.graph import StageGraph, validate_rule, validate_stages
from src.stageflow.stages.schemas import (
    PipelineConfiguration,
    PipelineCreate,
    PipelineStage,
    StageAutomationRule,
)

logger = structlog.get_logger(__name__)

RuleDisabledCallback = Callable[[str], None]

# Rule attributes a caller may change through update_rule.
UPDATABLE_RULE_FIELDS = {"name", "description", "trigger", "conditions", "actions", "is_active"}


def validate_configuration(config: PipelineConfiguration) -> None:
    """Check every invariant of a configuration, reporting all problems together."""
    problems: list[str] = []

    try:
        validate_stages(config.stages)
    except ValidationError as exc:
        problems.extend(exc.problems)

    stage_ids = {s.id for s in config.stages}
    for stage_id, days in config.sales_cycle_targets.items():
        if stage_id not in stage_ids:
            problems.append(f"dwell target for unknown stage '{stage_id}'")
        elif days <= 0:
            problems.append(f"dwell target for stage '{stage_id}' must be positive")
    for stage_id, probability in config.default_probabilities.items():
        if stage_id not in stage_ids:
            problems.append(f"default probability for unknown stage '{stage_id}'")
        elif not 0 <= probability <= 100:
            problems.append(f"default probability for stage '{stage_id}' outside 0-100")
    for key, target in config.conversion_targets.items():
        from_id, sep, to_id = key.partition("->")
        if not sep or from_id not in stage_ids or to_id not in stage_ids:
            problems.append(f"conversion target '{key}' does not name two stages")
        elif not 0 <= target <= 100:
            problems.append(f"conversion target '{key}' outside 0-100")

    seen_rules: set[str] = set()
    for rule, _stage in config.all_rules():
        if rule.id in seen_rules:
            problems.append(f"duplicate rule id '{rule.id}'")
        seen_rules.add(rule.id)
        try:
            validate_rule(rule, config.stages)
        except ValidationError as exc:
            problems.extend(f"rule '{rule.id}': {p}" for p in exc.problems)

    if problems:
        raise ValidationError(
            f"Invalid pipeline configuration '{config.name}': " + "; ".join(problems),
            problems=problems,
        )


def _drop_stage_targets(config: PipelineConfiguration, stage_id: str) -> None:
    config.sales_cycle_targets.pop(stage_id, None)
    config.default_probabilities.pop(stage_id, None)
    config.conversion_targets = {
        key: target
        for key, target in config.conversion_targets.items()
        if stage_id not in key.split("->")
    }


class ConfigurationStore:
    """In-process store of pipeline configurations with write-time validation.

    Args:
        clock: Injectable time source for ``created_at``/``updated_at``.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._pipelines: dict[str, PipelineConfiguration] = {}
        self._lock = asyncio.Lock()
        self._rule_disabled_subscribers: list[RuleDisabledCallback] = []

    # ── Subscriptions ───────────────────────────────────────────────────────

    def subscribe_rule_disabled(self, callback: RuleDisabledCallback) -> None:
        """Register ``callback(rule_id)`` for rule deactivation and deletion."""
        self._rule_disabled_subscribers.append(callback)

    def _notify_rule_disabled(self, rule_id: str) -> None:
        for callback in self._rule_disabled_subscribers:
            callback(rule_id)

    # ── Internal helpers ────────────────────────────────────────────────────

    def _get_live(self, tenant_id: str, pipeline_id: str) -> PipelineConfiguration:
        config = self._pipelines.get(pipeline_id)
        if config is None or config.tenant_id != tenant_id:
            raise NotFoundError(f"Pipeline '{pipeline_id}' not found")
        return config

    def _commit(self, candidate: PipelineConfiguration) -> PipelineConfiguration:
        validate_configuration(candidate)
        candidate.updated_at = self._clock()
        self._pipelines[candidate.id] = candidate
        return candidate.model_copy(deep=True)

    def _deactivate_others(self, tenant_id: str, keep_id: str) -> None:
        now = self._clock()
        for config in self._pipelines.values():
            if config.tenant_id == tenant_id and config.id != keep_id and config.is_active:
                config.is_active = False
                config.updated_at = now
                logger.info("pipelines.deactivated", pipeline_id=config.id, tenant_id=tenant_id)

    # ── Pipelines ───────────────────────────────────────────────────────────

    async def create_pipeline(
        self, tenant_id: str, data: PipelineCreate
    ) -> PipelineConfiguration:
        """Create a pipeline configuration.

        Stage positions are taken from list order when the given positions
        are all zero (the common case for hand-written payloads).

        Raises:
            ValidationError: If any stage, target or rule invariant fails.
        """
        async with self._lock:
            fields = data.model_dump(exclude_none=True)
            now = self._clock()
            config = PipelineConfiguration(
                tenant_id=tenant_id, created_at=now, updated_at=now, **fields
            )
            if config.id in self._pipelines:
                raise ValidationError(f"Pipeline id '{config.id}' already exists")
            if len(config.stages) > 1 and all(s.position == 0 for s in config.stages):
                for position, stage in enumerate(config.stages):
                    stage.position = position
            config.stages = sorted(config.stages, key=lambda s: s.position)

            created = self._commit(config)
            if config.is_active:
                self._deactivate_others(tenant_id, config.id)

        logger.info(
            "pipelines.created",
            pipeline_id=created.id,
            tenant_id=tenant_id,
            stages=len(created.stages),
            is_active=created.is_active,
        )
        return created

    async def get_pipeline(self, tenant_id: str, pipeline_id: str) -> PipelineConfiguration:
        """Return a copy of a pipeline configuration.

        Raises:
            NotFoundError: If no such pipeline exists for the tenant.
        """
        return self._get_live(tenant_id, pipeline_id).model_copy(deep=True)

    async def list_pipelines(self, tenant_id: str) -> list[PipelineConfiguration]:
        return [
            c.model_copy(deep=True)
            for c in sorted(self._pipelines.values(), key=lambda c: c.created_at)
            if c.tenant_id == tenant_id
        ]

    async def list_active(self) -> list[PipelineConfiguration]:
        """Active configuration of every tenant."""
        return [c.model_copy(deep=True) for c in self._pipelines.values() if c.is_active]

    async def get_active(self, tenant_id: str) -> PipelineConfiguration | None:
        for config in self._pipelines.values():
            if config.tenant_id == tenant_id and config.is_active:
                return config.model_copy(deep=True)
        return None

    async def activate(self, tenant_id: str, pipeline_id: str) -> PipelineConfiguration:
        async with self._lock:
            config = self._get_live(tenant_id, pipeline_id)
            self._deactivate_others(tenant_id, pipeline_id)
            config.is_active = True
            config.updated_at = self._clock()
        logger.info("pipelines.activated", pipeline_id=pipeline_id, tenant_id=tenant_id)
        return config.model_copy(deep=True)

    async def delete_pipeline(self, tenant_id: str, pipeline_id: str) -> None:
        async with self._lock:
            config = self._get_live(tenant_id, pipeline_id)
            del self._pipelines[pipeline_id]
        for rule, _stage in config.all_rules():
            self._notify_rule_disabled(rule.id)
        logger.info("pipelines.deleted", pipeline_id=pipeline_id, tenant_id=tenant_id)

    # ── Stages ──────────────────────────────────────────────────────────────

    async def add_stage(
        self,
        tenant_id: str,
        pipeline_id: str,
        stage: PipelineStage,
        position: int | None = None,
        dwell_target_days: float | None = None,
    ) -> PipelineConfiguration:
        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            graph = StageGraph(candidate.stages, now=self._clock())
            candidate.stages = graph.add_stage(stage, position)
            if dwell_target_days is not None:
                candidate.sales_cycle_targets[stage.id] = dwell_target_days
            updated = self._commit(candidate)

        logger.info(
            "pipelines.stage_added",
            pipeline_id=pipeline_id,
            stage_id=stage.id,
            position=updated.stage_by_id(stage.id).position,
        )
        return updated

    async def remove_stage(
        self, tenant_id: str, pipeline_id: str, stage_id: str
    ) -> PipelineConfiguration:
        """Remove a stage, its targets and its stage-scoped rules.

        Raises:
            NotFoundError: If the pipeline or stage does not exist.
            InvalidOperation: If the stage is the default stage.
            ValidationError: If a remaining rule still targets the stage.
        """
        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            removed = candidate.stage_by_id(stage_id)
            graph = StageGraph(candidate.stages, now=self._clock())
            candidate.stages = graph.remove_stage(stage_id)
            _drop_stage_targets(candidate, stage_id)
            updated = self._commit(candidate)

        for rule in removed.automation_rules:
            self._notify_rule_disabled(rule.id)
        logger.info("pipelines.stage_removed", pipeline_id=pipeline_id, stage_id=stage_id)
        return updated

    async def reorder_stages(
        self, tenant_id: str, pipeline_id: str, new_order: list[str]
    ) -> PipelineConfiguration:
        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            graph = StageGraph(candidate.stages, now=self._clock())
            candidate.stages = graph.reorder_stages(new_order)
            updated = self._commit(candidate)

        logger.info("pipelines.stages_reordered", pipeline_id=pipeline_id, order=new_order)
        return updated

    # ── Rules ───────────────────────────────────────────────────────────────

    async def add_rule(
        self,
        tenant_id: str,
        pipeline_id: str,
        rule: StageAutomationRule,
        stage_id: str | None = None,
    ) -> StageAutomationRule:
        """Attach a rule pipeline-wide, or to one stage when ``stage_id`` is given."""
        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            new_rule = rule.model_copy(deep=True)
            new_rule.created_at = self._clock()
            if stage_id is None:
                candidate.automations.append(new_rule)
            else:
                stage = candidate.stage_by_id(stage_id)
                if stage is None:
                    raise NotFoundError(f"Stage '{stage_id}' not found")
                stage.automation_rules.append(new_rule)
            self._commit(candidate)

        logger.info(
            "pipelines.rule_added",
            pipeline_id=pipeline_id,
            rule_id=new_rule.id,
            stage_id=stage_id,
            trigger=new_rule.trigger.type.value,
        )
        return new_rule.model_copy(deep=True)

    async def update_rule(
        self, tenant_id: str, pipeline_id: str, rule_id: str, changes: dict[str, Any]
    ) -> StageAutomationRule:
        """Apply a partial update to a rule.

        Raises:
            ValidationError: If ``changes`` names a field that cannot be
                updated or the updated rule is invalid.
        """
        unknown = set(changes) - UPDATABLE_RULE_FIELDS
        if unknown:
            raise ValidationError(f"Rule fields cannot be updated: {', '.join(sorted(unknown))}")

        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            rule = self._find_rule(candidate, rule_id)
            was_active = rule.is_active
            merged = StageAutomationRule.model_validate({**rule.model_dump(), **changes})
            for name in changes:
                setattr(rule, name, getattr(merged, name))
            self._commit(candidate)

        if was_active and not rule.is_active:
            self._notify_rule_disabled(rule_id)
        logger.info(
            "pipelines.rule_updated",
            pipeline_id=pipeline_id,
            rule_id=rule_id,
            fields=sorted(changes),
        )
        return rule.model_copy(deep=True)

    async def set_rule_active(
        self, tenant_id: str, pipeline_id: str, rule_id: str, is_active: bool
    ) -> StageAutomationRule:
        return await self.update_rule(tenant_id, pipeline_id, rule_id, {"is_active": is_active})

    async def delete_rule(self, tenant_id: str, pipeline_id: str, rule_id: str) -> None:
        async with self._lock:
            candidate = self._get_live(tenant_id, pipeline_id).model_copy(deep=True)
            self._find_rule(candidate, rule_id)
            candidate.automations = [r for r in candidate.automations if r.id != rule_id]
            for stage in candidate.stages:
                stage.automation_rules = [r for r in stage.automation_rules if r.id != rule_id]
            self._commit(candidate)

        self._notify_rule_disabled(rule_id)
        logger.info("pipelines.rule_deleted", pipeline_id=pipeline_id, rule_id=rule_id)

    async def record_rule_execution(
        self, pipeline_id: str, rule_id: str, at: datetime
    ) -> StageAutomationRule | None:
        """Bump a rule's execution counter and stamp ``last_executed``.

        Returns None when the rule was deleted while it was executing.
        """
        async with self._lock:
            config = self._pipelines.get(pipeline_id)
            if config is None:
                return None
            found = config.find_rule(rule_id)
            if found is None:
                return None
            rule, _stage = found
            rule.execution_count += 1
            rule.last_executed = at
            return rule.model_copy(deep=True)

    @staticmethod
    def _find_rule(config: PipelineConfiguration, rule_id: str) -> StageAutomationRule:
        found = config.find_rule(rule_id)
        if found is None:
            raise NotFoundError(f"Rule '{rule_id}' not found in pipeline '{config.id}'")
        return found[0]
