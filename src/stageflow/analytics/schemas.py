"""Derived analytics types.

Nothing here is stored: every analytics run rebuilds these from a ledger
snapshot and the current opportunity set. All durations are in days.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from src.stageflow.core.clock import ensure_utc, utc_now


class AnalyticsPeriod(BaseModel):
    """Half-open analysis window ``[start, end)``; entries at ``end`` belong to the next window."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalise_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> AnalyticsPeriod:
        if self.end <= self.start:
            raise ValueError("period end must be after period start")
        return self

    @classmethod
    def last_days(cls, days: int, now: datetime | None = None) -> AnalyticsPeriod:
        end = ensure_utc(now) if now else utc_now()
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> AnalyticsPeriod:
        """The immediately preceding window of equal length."""
        return AnalyticsPeriod(start=self.start - self.length, end=self.start)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


class VelocityTrend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class BottleneckSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CauseCategory(str, Enum):
    """Bottleneck cause categories, in recommendation tie-break order."""

    PROCESS = "process"
    TRAINING = "training"
    AUTOMATION = "automation"
    RESOURCE = "resource"
    STRUCTURE = "structure"


class StageMetrics(BaseModel):
    stage_id: str
    stage_name: str
    position: int
    total_opportunities: int = 0
    total_value: float = 0.0
    average_deal_size: float = 0.0
    entries: int = 0
    forward_exits: int = 0
    average_time_in_stage: float = 0.0
    conversion_rate: float = 0.0
    velocity_trend: VelocityTrend = VelocityTrend.STABLE
    insufficient_data: bool = False
    target_dwell_days: float | None = None
    target_conversion_rate: float | None = None
    is_terminal: bool = False
    bottleneck_score: float = 0.0


class BottleneckCause(BaseModel):
    category: CauseCategory
    description: str


class BottleneckAnalysis(BaseModel):
    stage_id: str
    stage_name: str
    severity: BottleneckSeverity
    causes: list[BottleneckCause] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    dwell_excess_pct: float | None = None
    conversion_gap: float | None = None
    affected_deals: int = 0
    affected_value: float = 0.0
    impact: float = 0.0
    potential_revenue_loss: float = 0.0


class PipelineRecommendation(BaseModel):
    category: CauseCategory
    priority: BottleneckSeverity
    title: str
    description: str
    stage_id: str
    estimated_impact: int
    implementation: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)


class PipelineAnalytics(BaseModel):
    pipeline_id: str
    period: AnalyticsPeriod
    total_opportunities: int = 0
    total_value: float = 0.0
    weighted_pipeline_value: float = 0.0
    average_sales_cycle: float = 0.0
    overall_conversion_rate: float = 0.0
    stage_metrics: list[StageMetrics] = Field(default_factory=list)
    bottleneck_analysis: list[BottleneckAnalysis] = Field(default_factory=list)
    recommended_actions: list[PipelineRecommendation] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)
    ledger_taken_at: datetime | None = None
