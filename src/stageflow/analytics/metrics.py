"""Per-stage and pipeline-level metrics.

Dwell time and conversion are computed per entry cohort: every movement
that entered stage S inside the period is followed to the opportunity's
next movement. Dwell runs from the entry to that next movement wherever it
falls, or to "now" (the ledger snapshot time) while the opportunity is
still in S. A forward exit, into a stage with a higher position, counts
toward conversion only when it happens by the end of the period.

Stages with no entries in the period report a conversion rate of 0 and
``insufficient_data=True`` instead of dividing by zero.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from src.stageflow.analytics.schemas import AnalyticsPeriod, StageMetrics, VelocityTrend
from src.stageflow.core.clock import days_between
from src.stageflow.ledger.schemas import DealMovement
from src.stageflow.opportunities.schemas import Opportunity
from src.stageflow.stages.schemas import PipelineConfiguration, PipelineStage


def clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, value))


@dataclass
class CohortStats:
    """Entry cohort of one stage in one period."""

    entries: int = 0
    forward_exits: int = 0
    total_dwell_days: float = 0.0

    @property
    def average_dwell(self) -> float | None:
        return self.total_dwell_days / self.entries if self.entries else None

    @property
    def conversion_rate(self) -> float:
        if not self.entries:
            return 0.0
        return clamp_percentage(self.forward_exits / self.entries * 100)


class MovementIndex:
    """Ledger movements of one pipeline grouped per opportunity, oldest first."""

    def __init__(self, movements: Iterable[DealMovement]) -> None:
        self._by_opportunity: dict[str, list[DealMovement]] = defaultdict(list)
        for movement in movements:
            self._by_opportunity[movement.opportunity_id].append(movement)

    def histories(self) -> Iterable[list[DealMovement]]:
        return self._by_opportunity.values()


def stage_cohort(
    index: MovementIndex,
    stage: PipelineStage,
    config: PipelineConfiguration,
    period: AnalyticsPeriod,
    now: datetime,
) -> CohortStats:
    stats = CohortStats()
    for history in index.histories():
        for i, movement in enumerate(history):
            if movement.to_stage_id != stage.id or not period.contains(movement.timestamp):
                continue
            stats.entries += 1

            following = history[i + 1] if i + 1 < len(history) else None
            if following is None:
                exit_at = now
            else:
                exit_at = following.timestamp
                target = config.stage_by_id(following.to_stage_id)
                if (
                    following.timestamp <= period.end
                    and target is not None
                    and target.position > stage.position
                ):
                    stats.forward_exits += 1
            stats.total_dwell_days += max(days_between(movement.timestamp, exit_at), 0.0)
    return stats


def velocity_trend(
    current: float | None, previous: float | None, threshold: float
) -> VelocityTrend:
    """Compare average dwell of two windows; shorter dwell means faster."""
    if current is None or previous is None:
        return VelocityTrend.STABLE
    if previous == 0:
        return VelocityTrend.STABLE if current == 0 else VelocityTrend.DOWN
    change = (current - previous) / previous
    if change <= -threshold:
        return VelocityTrend.UP
    if change >= threshold:
        return VelocityTrend.DOWN
    return VelocityTrend.STABLE


def calculate_stage_metrics(
    index: MovementIndex,
    opportunities: Sequence[Opportunity],
    config: PipelineConfiguration,
    period: AnalyticsPeriod,
    now: datetime,
    trend_threshold: float = 0.10,
) -> list[StageMetrics]:
    """One StageMetrics per stage, in position order.

    ``now`` closes the dwell of opportunities still sitting in a stage.
    """
    results: list[StageMetrics] = []
    previous_period = period.previous()

    for stage in config.ordered_stages():
        in_stage = [o for o in opportunities if o.current_stage_id == stage.id]
        total_value = sum(o.value for o in in_stage)
        current = stage_cohort(index, stage, config, period, now)
        previous = stage_cohort(index, stage, config, previous_period, now)

        results.append(
            StageMetrics(
                stage_id=stage.id,
                stage_name=stage.name,
                position=stage.position,
                total_opportunities=len(in_stage),
                total_value=total_value,
                average_deal_size=total_value / len(in_stage) if in_stage else 0.0,
                entries=current.entries,
                forward_exits=current.forward_exits,
                average_time_in_stage=current.average_dwell or 0.0,
                conversion_rate=current.conversion_rate,
                velocity_trend=velocity_trend(
                    current.average_dwell, previous.average_dwell, trend_threshold
                ),
                insufficient_data=current.entries == 0,
                target_dwell_days=config.dwell_target(stage.id),
                target_conversion_rate=config.conversion_target(stage.id),
                is_terminal=config.is_terminal(stage.id),
            )
        )
    return results


def overall_conversion_rate(
    index: MovementIndex, config: PipelineConfiguration, period: AnalyticsPeriod
) -> float:
    """Entries into the terminal stage over entries into the first stage, as a %."""
    stages = config.ordered_stages()
    if not stages:
        return 0.0
    first, last = stages[0].id, stages[-1].id
    entered = completed = 0
    for history in index.histories():
        for movement in history:
            if not period.contains(movement.timestamp):
                continue
            if movement.to_stage_id == first:
                entered += 1
            if movement.to_stage_id == last:
                completed += 1
    return clamp_percentage(completed / entered * 100) if entered else 0.0


def average_sales_cycle(
    index: MovementIndex, config: PipelineConfiguration, period: AnalyticsPeriod
) -> float:
    """Mean days from first ledger entry to the first terminal-stage entry in the period."""
    stages = config.ordered_stages()
    if not stages:
        return 0.0
    terminal = stages[-1].id
    cycles: list[float] = []
    for history in index.histories():
        closing = next(
            (
                m for m in history
                if m.to_stage_id == terminal and period.contains(m.timestamp)
            ),
            None,
        )
        if closing is not None:
            cycles.append(days_between(history[0].timestamp, closing.timestamp))
    return sum(cycles) / len(cycles) if cycles else 0.0


def weighted_pipeline_value(opportunities: Iterable[Opportunity]) -> float:
    return sum(o.value * o.probability / 100 for o in opportunities)
