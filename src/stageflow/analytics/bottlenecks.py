"""Bottleneck detection and impact ranking.

Severity policy, first match wins (terminal stages are never bottlenecks):
- critical: dwell at least 100% over target AND conversion at least 20
  points under target
- high: either of those alone
- medium: dwell 25-100% over target
"""

from __future__ import annotations

from collections.abc import Sequence

from src.stageflow.analytics.schemas import (
    BottleneckAnalysis,
    BottleneckCause,
    BottleneckSeverity,
    CauseCategory,
    StageMetrics,
)
from src.stageflow.stages.schemas import PipelineConfiguration

SEVERE_DWELL_EXCESS_PCT = 100.0
MODERATE_DWELL_EXCESS_PCT = 25.0
SEVERE_CONVERSION_GAP = 20.0
STRUCTURE_REQUIRED_FIELDS = 3

TIER_WEIGHTS: dict[BottleneckSeverity, float] = {
    BottleneckSeverity.MEDIUM: 0.4,
    BottleneckSeverity.HIGH: 0.7,
    BottleneckSeverity.CRITICAL: 1.0,
}
SEVERITY_WEIGHT = 0.6
VALUE_SHARE_WEIGHT = 0.4
REVENUE_LOSS_FACTOR = 0.1

_STAGE_RECOMMENDATIONS: dict[CauseCategory, tuple[str, ...]] = {
    CauseCategory.PROCESS: ("Review stage exit criteria",),
    CauseCategory.TRAINING: (
        "Provide additional training for this stage",
        "Review qualification criteria",
    ),
    CauseCategory.AUTOMATION: ("Implement time-based automation rules",),
    CauseCategory.RESOURCE: ("Rebalance deal ownership for this stage",),
    CauseCategory.STRUCTURE: ("Reduce required exit fields or split the stage",),
}


def dwell_excess_pct(metrics: StageMetrics) -> float | None:
    """How far average dwell exceeds the target, in percent of the target."""
    if metrics.insufficient_data or not metrics.target_dwell_days:
        return None
    target = metrics.target_dwell_days
    return (metrics.average_time_in_stage - target) / target * 100


def conversion_gap(metrics: StageMetrics) -> float | None:
    """Points by which conversion falls short of its target (negative when above)."""
    if metrics.insufficient_data or metrics.target_conversion_rate is None:
        return None
    return metrics.target_conversion_rate - metrics.conversion_rate


def classify_severity(excess: float | None, gap: float | None) -> BottleneckSeverity | None:
    severe_dwell = excess is not None and excess >= SEVERE_DWELL_EXCESS_PCT
    severe_conversion = gap is not None and gap >= SEVERE_CONVERSION_GAP
    if severe_dwell and severe_conversion:
        return BottleneckSeverity.CRITICAL
    if severe_dwell or severe_conversion:
        return BottleneckSeverity.HIGH
    if excess is not None and excess >= MODERATE_DWELL_EXCESS_PCT:
        return BottleneckSeverity.MEDIUM
    return None


def impact_score(severity: BottleneckSeverity, value_share: float) -> float:
    """Ranking score in 0-100 from the severity tier and the stage's value share."""
    score = 100 * (SEVERITY_WEIGHT * TIER_WEIGHTS[severity] + VALUE_SHARE_WEIGHT * value_share)
    return round(max(0.0, min(100.0, score)), 2)


def identify_causes(
    metrics: StageMetrics,
    excess: float | None,
    gap: float | None,
    config: PipelineConfiguration,
    congestion_threshold: int,
) -> list[BottleneckCause]:
    stage = config.stage_by_id(metrics.stage_id)
    dwell_overrun = excess is not None and excess >= MODERATE_DWELL_EXCESS_PCT
    conversion_shortfall = gap is not None and gap >= SEVERE_CONVERSION_GAP
    causes: list[BottleneckCause] = []

    if dwell_overrun:
        causes.append(BottleneckCause(
            category=CauseCategory.PROCESS,
            description=(
                f"Deals spend {metrics.average_time_in_stage:.1f} days in stage against "
                f"a {metrics.target_dwell_days:g}-day target"
            ),
        ))
    if conversion_shortfall:
        causes.append(BottleneckCause(
            category=CauseCategory.TRAINING,
            description=(
                f"Conversion to the next stage is {metrics.conversion_rate:.1f}% against "
                f"a {metrics.target_conversion_rate:g}% target"
            ),
        ))
    has_rules = stage is not None and any(r.is_active for r in stage.automation_rules)
    if dwell_overrun and not has_rules:
        causes.append(BottleneckCause(
            category=CauseCategory.AUTOMATION,
            description="No active automation rules move deals out of this stage",
        ))
    if metrics.total_opportunities >= congestion_threshold:
        causes.append(BottleneckCause(
            category=CauseCategory.RESOURCE,
            description=f"{metrics.total_opportunities} open deals are congesting the stage",
        ))
    if (
        conversion_shortfall
        and stage is not None
        and len(stage.required_fields) >= STRUCTURE_REQUIRED_FIELDS
    ):
        causes.append(BottleneckCause(
            category=CauseCategory.STRUCTURE,
            description=f"{len(stage.required_fields)} required exit fields gate this stage",
        ))
    return causes


def analyze_bottlenecks(
    stage_metrics: Sequence[StageMetrics],
    config: PipelineConfiguration,
    total_value: float,
    congestion_threshold: int = 50,
) -> list[BottleneckAnalysis]:
    """Bottlenecks of a pipeline ranked by impact, highest first."""
    results: list[BottleneckAnalysis] = []

    for metrics in stage_metrics:
        if metrics.is_terminal:
            continue
        excess = dwell_excess_pct(metrics)
        gap = conversion_gap(metrics)
        severity = classify_severity(excess, gap)
        if severity is None:
            continue

        causes = identify_causes(metrics, excess, gap, config, congestion_threshold)
        value_share = metrics.total_value / total_value if total_value > 0 else 0.0
        impact = impact_score(severity, value_share)
        recommendations = [
            text for cause in causes for text in _STAGE_RECOMMENDATIONS[cause.category]
        ]

        results.append(
            BottleneckAnalysis(
                stage_id=metrics.stage_id,
                stage_name=metrics.stage_name,
                severity=severity,
                causes=causes,
                recommendations=recommendations,
                dwell_excess_pct=round(excess, 2) if excess is not None else None,
                conversion_gap=round(gap, 2) if gap is not None else None,
                affected_deals=metrics.total_opportunities,
                affected_value=metrics.total_value,
                impact=impact,
                potential_revenue_loss=round(
                    metrics.total_value * impact / 100 * REVENUE_LOSS_FACTOR, 2
                ),
            )
        )

    position = {m.stage_id: m.position for m in stage_metrics}
    results.sort(key=lambda b: (-b.impact, position[b.stage_id]))
    return results
