"""Action execution.

ActionExecutor applies one AutomationAction to the live opportunity. Stage
moves go through the ledger and are the only actions that produce a
movement (and so a follow-up stage_changed event). Field writes are typed.
External side effects become DispatchRequests; a failed dispatch is
logged and reported on the outcome, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.stageflow.automation.dispatcher import SideEffectDispatcher
from src.stageflow.automation.schemas import (
    ActionOutcome,
    ActionStatus,
    DispatchRequest,
    DispatchType,
)
from src.stageflow.config import ExitCriteriaPolicy
from src.stageflow.core.clock import Clock, utc_now
from src.stageflow.core.errors import (
    CascadeLimitExceeded,
    DispatchError,
    ExitCriteriaNotMet,
    InvalidOperation,
)
from src.stageflow.core.monitoring import cascade_aborts_total, dispatch_requests_total
from src.stageflow.ledger.schemas import SYSTEM_ACTOR, DealMovement
from src.stageflow.ledger.store import MovementLedger
from src.stageflow.opportunities.fields import apply_field_write, get_field_value, is_empty_value
from src.stageflow.opportunities.schemas import Opportunity, OpportunityField
from src.stageflow.stages.schemas import (
    ActionType,
    AutomationAction,
    PipelineConfiguration,
    PipelineStage,
)

logger = structlog.get_logger(__name__)

_DISPATCH_TYPES: dict[ActionType, DispatchType] = {
    ActionType.CREATE_TASK: DispatchType.TASK,
    ActionType.SEND_EMAIL: DispatchType.EMAIL,
    ActionType.NOTIFY_USER: DispatchType.NOTIFICATION,
    ActionType.WEBHOOK: DispatchType.WEBHOOK,
}


class CascadeBudget:
    """Counts automated moves caused by one originating event.

    ``check`` is called before a move is appended and ``record`` after,
    so an aborted chain never leaves a partial ledger entry.
    """

    def __init__(self, limit: int, origin_event_id: str, opportunity_id: str) -> None:
        self.limit = limit
        self.origin_event_id = origin_event_id
        self.opportunity_id = opportunity_id
        self.used = 0

    def check(self) -> None:
        if self.used >= self.limit:
            cascade_aborts_total.inc()
            raise CascadeLimitExceeded(self.limit, self.opportunity_id, self.origin_event_id)

    def record(self) -> None:
        self.used += 1

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass
class ActionContext:
    """Everything one action needs besides the action itself."""

    opportunity: Opportunity
    config: PipelineConfiguration
    rule_id: str
    event_id: str
    origin_event_id: str
    action_index: int
    budget: CascadeBudget | None = None
    deferred: bool = False


def missing_exit_fields(opportunity: Opportunity, stage: PipelineStage) -> list[str]:
    """Required fields of ``stage`` that are still empty on ``opportunity``."""
    return [
        name for name in stage.required_fields
        if is_empty_value(get_field_value(opportunity, name))
    ]


class ActionExecutor:
    """Applies actions to opportunities.

    Args:
        ledger: Ledger that records stage moves.
        dispatcher: Receives external side-effect requests.
        exit_policy: ``strict`` blocks forward moves with unmet required
            fields; ``advisory`` allows them and flags the movement.
        clock: Injectable time source.
    """

    def __init__(
        self,
        ledger: MovementLedger,
        dispatcher: SideEffectDispatcher,
        exit_policy: ExitCriteriaPolicy = ExitCriteriaPolicy.advisory,
        clock: Clock = utc_now,
    ) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._exit_policy = exit_policy
        self._clock = clock

    # ── Stage moves ─────────────────────────────────────────────────────────

    def move(
        self,
        opportunity: Opportunity,
        config: PipelineConfiguration,
        target_ref: str,
        *,
        actor: str,
        automated: bool,
        reason: str = "",
        rule_id: str | None = None,
        event_id: str | None = None,
        budget: CascadeBudget | None = None,
        deferred: bool = False,
    ) -> DealMovement | None:
        """Move ``opportunity`` to the stage named by ``target_ref``.

        Returns None when the move is a no-op: the opportunity is already in
        the target stage or, for deferred execution, already at or past it.

        Raises:
            InvalidOperation: If the target stage does not exist in the
                opportunity's pipeline.
            ExitCriteriaNotMet: Under the strict policy with empty required fields.
            CascadeLimitExceeded: If ``budget`` is exhausted.
        """
        target = config.resolve_stage(target_ref)
        if target is None:
            raise InvalidOperation(
                f"Stage '{target_ref}' does not exist in pipeline '{config.id}'"
            )
        if opportunity.current_stage_id == target.id:
            return None

        current = config.stage_by_id(opportunity.current_stage_id)
        if deferred and current is not None and current.position >= target.position:
            logger.info(
                "actions.deferred_move_skipped",
                opportunity_id=opportunity.id,
                current_stage=current.id,
                target_stage=target.id,
            )
            return None

        advisory_flags: tuple[str, ...] = ()
        if current is not None and target.position > current.position:
            missing = missing_exit_fields(opportunity, current)
            if missing:
                if self._exit_policy == ExitCriteriaPolicy.strict:
                    raise ExitCriteriaNotMet(current.id, missing)
                advisory_flags = tuple(f"missing_required_field:{name}" for name in missing)
                logger.warning(
                    "actions.exit_criteria_unmet",
                    opportunity_id=opportunity.id,
                    stage_id=current.id,
                    missing_fields=missing,
                )

        if automated and budget is not None:
            budget.check()

        probability = config.default_probabilities.get(target.id, target.probability)
        movement = DealMovement(
            opportunity_id=opportunity.id,
            pipeline_id=config.id,
            from_stage_id=opportunity.current_stage_id,
            to_stage_id=target.id,
            reason=reason,
            timestamp=self._clock(),
            actor=actor,
            automated=automated,
            value=opportunity.value,
            probability=probability,
            rule_id=rule_id,
            event_id=event_id,
            advisory_flags=advisory_flags,
        )
        self._ledger.append(movement, opportunity)
        opportunity.probability = probability
        if automated and budget is not None:
            budget.record()
        return movement

    # ── Action dispatch ─────────────────────────────────────────────────────

    async def execute(
        self, action: AutomationAction, ctx: ActionContext
    ) -> tuple[ActionOutcome, DealMovement | None]:
        """Run one action against ``ctx.opportunity``.

        Raises:
            ValidationError: On a field write that does not match its declared type.
            InvalidOperation: On a move to a missing stage.
            CascadeLimitExceeded: When the cascade budget is exhausted.
        """
        if action.type == ActionType.MOVE_STAGE:
            movement = self.move(
                ctx.opportunity,
                ctx.config,
                str(action.configuration["target_stage"]),
                actor=SYSTEM_ACTOR,
                automated=True,
                reason=action.configuration.get("reason", f"Automation rule {ctx.rule_id}"),
                rule_id=ctx.rule_id,
                event_id=ctx.event_id,
                budget=ctx.budget,
                deferred=ctx.deferred,
            )
            if movement is None:
                return ActionOutcome(
                    action_type=action.type.value,
                    status=ActionStatus.SKIPPED,
                    detail="already at or past target stage",
                ), None
            return ActionOutcome(
                action_type=action.type.value,
                status=ActionStatus.APPLIED,
                detail=f"{movement.from_stage_id} -> {movement.to_stage_id}",
                movement_id=movement.id,
            ), movement

        if action.type == ActionType.UPDATE_FIELD:
            field = str(action.configuration["field"])
            return self._write(ctx, action.type, field, action.configuration["value"]), None

        if action.type == ActionType.UPDATE_PROBABILITY:
            return self._write(
                ctx,
                action.type,
                OpportunityField.PROBABILITY.value,
                action.configuration["probability"],
            ), None

        return await self._dispatch(action, ctx), None

    def _write(
        self, ctx: ActionContext, action_type: ActionType, field: str, value: Any
    ) -> ActionOutcome:
        old, new = apply_field_write(
            ctx.opportunity,
            field,
            value,
            ctx.config.custom_field_definitions(),
            self._clock(),
        )
        logger.info(
            "actions.field_written",
            opportunity_id=ctx.opportunity.id,
            rule_id=ctx.rule_id,
            field=field,
            old_value=old,
            new_value=new,
        )
        return ActionOutcome(
            action_type=action_type.value,
            status=ActionStatus.APPLIED,
            detail=f"{field}: {old!r} -> {new!r}",
        )

    def build_request(self, action: AutomationAction, ctx: ActionContext) -> DispatchRequest:
        settings = action.configuration
        opp = ctx.opportunity
        now = self._clock()

        if action.type == ActionType.CREATE_TASK:
            due_in_days = settings.get("due_in_days", 1)
            target = settings.get("assignee") or opp.owner_id or "unassigned"
            payload = {
                "title": settings["title"],
                "description": settings.get("description", ""),
                "due_at": (now + timedelta(days=float(due_in_days))).isoformat(),
            }
        elif action.type == ActionType.SEND_EMAIL:
            target = settings["to"]
            payload = {"subject": settings["subject"], "body": settings.get("body", "")}
        elif action.type == ActionType.NOTIFY_USER:
            target = settings["user_id"]
            payload = {"message": settings["message"]}
        else:
            target = settings["url"]
            payload = dict(settings.get("payload", {}))

        payload.setdefault("opportunity", {
            "id": opp.id,
            "title": opp.title,
            "stage_id": opp.current_stage_id,
            "value": opp.value,
        })
        return DispatchRequest(
            type=_DISPATCH_TYPES[action.type],
            target=str(target),
            payload=payload,
            tenant_id=opp.tenant_id,
            rule_id=ctx.rule_id,
            opportunity_id=opp.id,
            idempotency_key=f"{ctx.origin_event_id}:{ctx.rule_id}:{ctx.action_index}",
            requested_at=now,
        )

    async def _dispatch(self, action: AutomationAction, ctx: ActionContext) -> ActionOutcome:
        request = self.build_request(action, ctx)
        try:
            await self._dispatcher.dispatch(request)
        except Exception as exc:
            error = (
                exc if isinstance(exc, DispatchError)
                else DispatchError(request.type.value, str(exc))
            )
            dispatch_requests_total.labels(request_type=request.type.value, status="failed").inc()
            logger.warning(
                "actions.dispatch_failed",
                request_type=request.type.value,
                rule_id=ctx.rule_id,
                opportunity_id=ctx.opportunity.id,
                error=error.reason,
            )
            return ActionOutcome(
                action_type=action.type.value,
                status=ActionStatus.DISPATCH_FAILED,
                detail=error.reason,
            )

        dispatch_requests_total.labels(request_type=request.type.value, status="requested").inc()
        return ActionOutcome(
            action_type=action.type.value,
            status=ActionStatus.DISPATCHED,
            detail=f"{request.type.value} -> {request.target}",
        )
