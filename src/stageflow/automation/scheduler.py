"""Delayed actions and the background wake-up loop.

DelayedActionScheduler holds the deferred remainder of rule action lists,
keyed by (rule_id, opportunity_id, due_at). Scheduling the same key twice
is ignored. ``pop_due`` removes items before returning them, so each item
gets at most one dispatch attempt even if the caller fails half way.

``setup_automation_scheduler`` and ``start_scheduler_background`` run the
engine's periodic work (due delayed actions, date_reached ticks) as
asyncio background loops stored on ``app.state``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog

from src.stageflow.automation.schemas import ScheduledAction
from src.stageflow.core.clock import ensure_utc
from src.stageflow.core.monitoring import scheduled_actions_total

logger = structlog.get_logger(__name__)

ScheduleKey = tuple[str, str, datetime]


class DelayedActionScheduler:
    """In-process store of pending delayed actions."""

    def __init__(self) -> None:
        self._items: dict[ScheduleKey, ScheduledAction] = {}

    def schedule(self, item: ScheduledAction) -> bool:
        """Add ``item``; returns False when an item with the same key is pending."""
        if item.key in self._items:
            logger.info(
                "scheduler.duplicate_ignored",
                rule_id=item.rule_id,
                opportunity_id=item.opportunity_id,
                due_at=item.due_at.isoformat(),
            )
            return False
        self._items[item.key] = item
        scheduled_actions_total.labels(event="scheduled").inc()
        logger.info(
            "scheduler.action_scheduled",
            rule_id=item.rule_id,
            opportunity_id=item.opportunity_id,
            due_at=item.due_at.isoformat(),
            actions=len(item.actions),
        )
        return True

    def pop_due(self, now: datetime) -> list[ScheduledAction]:
        """Remove and return every item due at or before ``now``, earliest first."""
        cutoff = ensure_utc(now)
        due = sorted(
            (item for item in self._items.values() if item.due_at <= cutoff),
            key=lambda item: item.due_at,
        )
        for item in due:
            del self._items[item.key]
        if due:
            scheduled_actions_total.labels(event="popped").inc(len(due))
        return due

    def cancel_rule(self, rule_id: str) -> int:
        """Drop every pending item of ``rule_id``; returns how many were dropped."""
        keys = [key for key in self._items if key[0] == rule_id]
        for key in keys:
            del self._items[key]
        if keys:
            scheduled_actions_total.labels(event="cancelled").inc(len(keys))
            logger.info("scheduler.rule_cancelled", rule_id=rule_id, cancelled=len(keys))
        return len(keys)

    def pending(
        self, rule_id: str | None = None, opportunity_id: str | None = None
    ) -> list[ScheduledAction]:
        return sorted(
            (
                item
                for item in self._items.values()
                if (rule_id is None or item.rule_id == rule_id)
                and (opportunity_id is None or item.opportunity_id == opportunity_id)
            ),
            key=lambda item: item.due_at,
        )

    def next_due(self) -> datetime | None:
        return min((item.due_at for item in self._items.values()), default=None)

    def __len__(self) -> int:
        return len(self._items)


# ── Background loops ────────────────────────────────────────────────────────

TaskFn = Callable[[], Awaitable[int]]


def setup_automation_scheduler(service) -> dict[str, TaskFn]:
    """Build the periodic engine tasks.

    Each task logs and swallows its own failure so one bad run does not
    stop the loop.

    Args:
        service: PipelineService exposing ``run_due_actions`` and ``tick``.

    Returns:
        Dict mapping task name to async callable.
    """

    async def run_due_actions_task() -> int:
        try:
            results = await service.run_due_actions()
            if results:
                logger.info("scheduler.due_actions_run", count=len(results))
            return len(results)
        except Exception:
            logger.warning("scheduler.due_actions_failed", exc_info=True)
            return 0

    async def date_triggers_task() -> int:
        try:
            results = await service.tick()
            if results:
                logger.info("scheduler.date_triggers_fired", count=len(results))
            return len(results)
        except Exception:
            logger.warning("scheduler.date_triggers_failed", exc_info=True)
            return 0

    return {
        "run_due_actions": run_due_actions_task,
        "date_triggers": date_triggers_task,
    }


async def start_scheduler_background(
    tasks: dict[str, TaskFn], app_state, poll_seconds: float
) -> None:
    """Start each task as an asyncio loop and keep references on ``app_state``."""
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():

        async def _loop(fn=task_fn, name=task_name, sleep=poll_seconds):
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        background_tasks.append(
            asyncio.create_task(_loop(), name=f"stageflow_scheduler_{task_name}")
        )

    app_state.scheduler_tasks = background_tasks
    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )


async def stop_scheduler_background(app_state) -> None:
    tasks: list[asyncio.Task] = getattr(app_state, "scheduler_tasks", [])
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    app_state.scheduler_tasks = []
