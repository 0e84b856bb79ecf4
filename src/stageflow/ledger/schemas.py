"""Ledger record types.

DealMovement is frozen: once appended it is never mutated or deleted.
Movements reference stages by id, so renumbering stage positions never
invalidates history.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.stageflow.core.clock import ensure_utc, utc_now

SYSTEM_ACTOR = "system"


class DealMovement(BaseModel):
    """One recorded stage transition of an opportunity.

    ``from_stage_id`` is None only for the initial placement of an
    opportunity in its first stage. ``value`` and ``probability`` are
    snapshots taken at the time of the move.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    opportunity_id: str
    pipeline_id: str
    from_stage_id: str | None
    to_stage_id: str
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    actor: str = SYSTEM_ACTOR
    automated: bool = False
    value: float = 0.0
    probability: float = 0.0
    rule_id: str | None = None
    event_id: str | None = None
    advisory_flags: tuple[str, ...] = ()

    @field_validator("timestamp")
    @classmethod
    def _normalise_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class LedgerSnapshot(BaseModel):
    """Immutable copy of the ledger handed to analytics."""

    model_config = ConfigDict(frozen=True)

    movements: tuple[DealMovement, ...] = ()
    taken_at: datetime = Field(default_factory=utc_now)

    def for_pipeline(self, pipeline_id: str) -> list[DealMovement]:
        return [m for m in self.movements if m.pipeline_id == pipeline_id]
