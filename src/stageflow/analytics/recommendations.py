"""Pipeline-level recommendations derived from active bottlenecks.

One recommendation per distinct cause category, built from the
highest-impact bottleneck carrying that cause. Output order is
deterministic: impact descending, then category order.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from src.stageflow.analytics.schemas import (
    BottleneckAnalysis,
    CauseCategory,
    PipelineRecommendation,
)

_CATEGORY_ORDER = {category: i for i, category in enumerate(CauseCategory)}


def round_half_up(value: float) -> int:
    """Round halves up: 62.5 gives 63 where ``round`` would give 62."""
    return math.floor(value + 0.5)


_TEMPLATES: dict[CauseCategory, dict] = {
    CauseCategory.PROCESS: {
        "title": "Streamline the {stage} stage",
        "description": "Deals overstay their dwell target in {stage}.",
        "implementation": ["Review stage definitions", "Tighten exit criteria"],
        "metrics": ["time_in_stage", "deal_velocity"],
    },
    CauseCategory.TRAINING: {
        "title": "Coach the team on {stage}",
        "description": "Conversion out of {stage} is well below target.",
        "implementation": ["Provide targeted training", "Review qualification criteria"],
        "metrics": ["conversion_rate"],
    },
    CauseCategory.AUTOMATION: {
        "title": "Automate follow-ups in {stage}",
        "description": "{stage} has no active automation rules while deals stall there.",
        "implementation": ["Add date-based reminder rules", "Add stage-change task rules"],
        "metrics": ["time_in_stage"],
    },
    CauseCategory.RESOURCE: {
        "title": "Add capacity to {stage}",
        "description": "Open deal volume in {stage} exceeds what the team can work.",
        "implementation": ["Rebalance deal ownership", "Prioritise high-value deals"],
        "metrics": ["open_deals", "deal_velocity"],
    },
    CauseCategory.STRUCTURE: {
        "title": "Restructure the {stage} stage",
        "description": "Many required exit fields in {stage} coincide with low conversion.",
        "implementation": ["Reduce required exit fields", "Split the stage in two"],
        "metrics": ["conversion_rate", "time_in_stage"],
    },
}


def generate_recommendations(
    bottlenecks: Sequence[BottleneckAnalysis],
) -> list[PipelineRecommendation]:
    best: dict[CauseCategory, BottleneckAnalysis] = {}
    for bottleneck in bottlenecks:
        for cause in bottleneck.causes:
            current = best.get(cause.category)
            if current is None or bottleneck.impact > current.impact:
                best[cause.category] = bottleneck

    ordered = sorted(best.items(), key=lambda item: (-item[1].impact, _CATEGORY_ORDER[item[0]]))

    recommendations = []
    for category, bottleneck in ordered:
        template = _TEMPLATES[category]
        recommendations.append(
            PipelineRecommendation(
                category=category,
                priority=bottleneck.severity,
                title=template["title"].format(stage=bottleneck.stage_name),
                description=template["description"].format(stage=bottleneck.stage_name),
                stage_id=bottleneck.stage_id,
                estimated_impact=round_half_up(bottleneck.impact),
                implementation=list(template["implementation"]),
                metrics=list(template["metrics"]),
            )
        )
    return recommendations
