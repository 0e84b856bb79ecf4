"""Schemas for automation events, execution results and scheduled work."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.stageflow.core.clock import utc_now
from src.stageflow.ledger.schemas import SYSTEM_ACTOR, DealMovement
from src.stageflow.stages.schemas import AutomationAction, TriggerType


class RuleState(str, Enum):
    INACTIVE = "inactive"
    ARMED = "armed"
    EXECUTING = "executing"
    COOLING_DOWN = "cooling_down"


class AutomationEvent(BaseModel):
    """An opportunity event submitted to the engine.

    Payload keys by type:
    - stage_changed: optional ``to_stage`` (id or name), ``from_stage``, ``reason``
    - value_changed / field_updated: ``field``, ``old_value``, ``new_value``
    - date_reached: ``rule_id``, ``target_date``
    - manual: optional ``rule_id``

    ``depth`` counts the automated moves between the originating event and
    this one; ``origin_event_id`` names the event that started the chain.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: TriggerType
    opportunity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str = SYSTEM_ACTOR
    depth: int = 0
    origin_event_id: str | None = None
    occurred_at: datetime = Field(default_factory=utc_now)

    @property
    def origin_id(self) -> str:
        return self.origin_event_id or self.id


class ActionStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"  # no-op, e.g. already at the target stage
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    FAILED = "failed"
    DEFERRED = "deferred"


class ActionOutcome(BaseModel):
    action_type: str
    status: ActionStatus
    detail: str = ""
    movement_id: str | None = None


class RuleExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"
    ABORTED = "aborted"  # cascade limit


class RuleExecutionResult(BaseModel):
    rule_id: str
    rule_name: str
    event_id: str
    status: RuleExecutionStatus
    outcomes: list[ActionOutcome] = Field(default_factory=list)
    error: str | None = None
    counted: bool = False


class EventResult(BaseModel):
    """What happened while processing one submitted event and its cascade."""

    event_id: str
    opportunity_id: str
    duplicate: bool = False
    movements: list[DealMovement] = Field(default_factory=list)
    rule_executions: list[RuleExecutionResult] = Field(default_factory=list)
    events_processed: int = 0
    cascade_aborted: bool = False
    error: str | None = None


class DispatchType(str, Enum):
    EMAIL = "email"
    TASK = "task"
    NOTIFICATION = "notification"
    WEBHOOK = "webhook"


class DispatchRequest(BaseModel):
    """Opaque side-effect request handed to the external dispatcher."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: DispatchType
    target: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: str = "default"
    rule_id: str | None = None
    opportunity_id: str | None = None
    idempotency_key: str
    requested_at: datetime = Field(default_factory=utc_now)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for Redis Streams.

        The payload is JSON-encoded; None becomes an empty string.
        """
        return {
            "id": self.id,
            "type": self.type.value,
            "target": self.target,
            "payload": json.dumps(self.payload, default=str),
            "tenant_id": self.tenant_id,
            "rule_id": self.rule_id or "",
            "opportunity_id": self.opportunity_id or "",
            "idempotency_key": self.idempotency_key,
            "requested_at": self.requested_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DispatchRequest:
        """Reverse ``to_stream_dict()``."""
        return cls(
            id=raw["id"],
            type=DispatchType(raw["type"]),
            target=raw["target"],
            payload=json.loads(raw["payload"]) if raw.get("payload") else {},
            tenant_id=raw["tenant_id"],
            rule_id=raw.get("rule_id") or None,
            opportunity_id=raw.get("opportunity_id") or None,
            idempotency_key=raw["idempotency_key"],
            requested_at=datetime.fromisoformat(raw["requested_at"]),
        )


class ScheduledAction(BaseModel):
    """Remainder of a rule's action list waiting for its delay to elapse.

    Keyed by (rule_id, opportunity_id, due_at).
    """

    rule_id: str
    pipeline_id: str
    tenant_id: str
    opportunity_id: str
    due_at: datetime
    actions: list[AutomationAction]
    origin_event_id: str
    action_offset: int = 0  # index of actions[0] in the rule's full action list
    actions_ran: int = 0
    scheduled_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.rule_id, self.opportunity_id, self.due_at)
