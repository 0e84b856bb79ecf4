"""Append-only movement ledger.

``append`` is the only mutator. Under a single lock it checks that the new
movement continues the opportunity's history, then records the movement
and updates ``opportunity.current_stage_id`` together, so the pair
(current stage, last movement) is never observed half-written.

Readers take the lock only long enough to copy; analytics work on a
``LedgerSnapshot`` and never hold the lock while computing.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime

import structlog

from src.stageflow.core.clock import Clock, ensure_utc, utc_now
from src.stageflow.core.errors import InvalidOperation, ValidationError
from src.stageflow.core.monitoring import movements_appended_total
from src.stageflow.ledger.schemas import DealMovement, LedgerSnapshot
from src.stageflow.opportunities.schemas import Opportunity

logger = structlog.get_logger(__name__)


class MovementLedger:
    """In-memory ledger of record for stage movements.

    Args:
        clock: Time source for snapshot timestamps.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._movements: list[DealMovement] = []
        self._by_opportunity: dict[str, list[DealMovement]] = defaultdict(list)

    def append(self, movement: DealMovement, opportunity: Opportunity) -> DealMovement:
        """Record ``movement`` and move ``opportunity`` to its target stage.

        Raises:
            ValidationError: If the movement belongs to another opportunity
                or is older than the last recorded movement.
            InvalidOperation: If the movement does not start where the
                opportunity currently is.
        """
        if movement.opportunity_id != opportunity.id:
            raise ValidationError(
                f"Movement for '{movement.opportunity_id}' cannot be applied to "
                f"opportunity '{opportunity.id}'"
            )
        if movement.from_stage_id == movement.to_stage_id:
            raise InvalidOperation(
                f"Movement from '{movement.from_stage_id}' to itself is not a transition"
            )

        with self._lock:
            history = self._by_opportunity.get(opportunity.id, [])
            last = history[-1] if history else None

            if movement.from_stage_id is None:
                if last is not None:
                    raise InvalidOperation(
                        f"Opportunity '{opportunity.id}' already has a placement; "
                        "initial placement is only valid for an empty history"
                    )
            else:
                if movement.from_stage_id != opportunity.current_stage_id:
                    raise InvalidOperation(
                        f"Movement starts at '{movement.from_stage_id}' but opportunity "
                        f"'{opportunity.id}' is in '{opportunity.current_stage_id}'"
                    )
                if last is not None and last.to_stage_id != movement.from_stage_id:
                    raise InvalidOperation(
                        f"Movement starts at '{movement.from_stage_id}' but the last "
                        f"recorded movement ended at '{last.to_stage_id}'"
                    )

            if last is not None and movement.timestamp < last.timestamp:
                raise ValidationError(
                    f"Movement timestamp {movement.timestamp.isoformat()} precedes the "
                    f"last movement at {last.timestamp.isoformat()}"
                )

            self._by_opportunity[opportunity.id].append(movement)
            self._movements.append(movement)
            opportunity.current_stage_id = movement.to_stage_id
            opportunity.updated_at = movement.timestamp

        movements_appended_total.labels(automated=str(movement.automated).lower()).inc()
        logger.info(
            "ledger.movement_appended",
            movement_id=movement.id,
            opportunity_id=movement.opportunity_id,
            from_stage=movement.from_stage_id,
            to_stage=movement.to_stage_id,
            automated=movement.automated,
            actor=movement.actor,
        )
        return movement

    def history(self, opportunity_id: str) -> list[DealMovement]:
        """All movements of one opportunity in timestamp order."""
        with self._lock:
            return list(self._by_opportunity.get(opportunity_id, ()))

    def last_movement(self, opportunity_id: str) -> DealMovement | None:
        with self._lock:
            history = self._by_opportunity.get(opportunity_id)
            return history[-1] if history else None

    def since(self, timestamp: datetime) -> list[DealMovement]:
        """Movements at or after ``timestamp``, oldest first."""
        cutoff = ensure_utc(timestamp)
        with self._lock:
            selected = [m for m in self._movements if m.timestamp >= cutoff]
        return sorted(selected, key=lambda m: m.timestamp)

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            movements = tuple(self._movements)
        return LedgerSnapshot(
            movements=tuple(sorted(movements, key=lambda m: m.timestamp)),
            taken_at=self._clock(),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._movements)
