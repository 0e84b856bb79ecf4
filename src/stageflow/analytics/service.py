"""Pipeline analytics service.

Builds a PipelineAnalytics report from a ledger snapshot, the pipeline's
current opportunities and its configuration. The ledger lock is held only
while the snapshot is copied, so report generation never blocks movement
writers. Reports may be cached in Redis; the cache is never authoritative
and ``fresh=True`` bypasses it.
"""

from __future__ import annotations

import time
from datetime import datetime

import structlog

from src.stageflow.analytics.bottlenecks import analyze_bottlenecks
from src.stageflow.analytics.metrics import (
    MovementIndex,
    average_sales_cycle,
    calculate_stage_metrics,
    overall_conversion_rate,
    weighted_pipeline_value,
)
from src.stageflow.analytics.recommendations import generate_recommendations
from src.stageflow.analytics.schemas import AnalyticsPeriod, PipelineAnalytics
from src.stageflow.core.clock import Clock, utc_now
from src.stageflow.core.monitoring import analytics_generation_duration_seconds
from src.stageflow.ledger.store import MovementLedger
from src.stageflow.opportunities.repository import OpportunityRepository
from src.stageflow.stages.registry import ConfigurationStore

logger = structlog.get_logger(__name__)


class PipelineAnalyticsService:
    """Generates stage-level analytics for a pipeline.

    Args:
        store: Pipeline configuration store.
        repository: Opportunity storage port.
        ledger: Movement ledger to snapshot.
        redis_client: Optional Redis client for report caching.
        period_days: Default analysis window length.
        trend_threshold: Relative dwell change for an up/down velocity trend.
        congestion_threshold: Open deals in a stage that count as congestion.
        cache_ttl: Seconds a cached report stays valid.
        clock: Injectable time source.
    """

    CACHE_TTL = 300  # 5 minutes

    def __init__(
        self,
        store: ConfigurationStore,
        repository: OpportunityRepository,
        ledger: MovementLedger,
        redis_client=None,
        period_days: int = 30,
        trend_threshold: float = 0.10,
        congestion_threshold: int = 50,
        cache_ttl: int | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._repository = repository
        self._ledger = ledger
        self._redis = redis_client
        self._period_days = period_days
        self._trend_threshold = trend_threshold
        self._congestion_threshold = congestion_threshold
        self._cache_ttl = cache_ttl or self.CACHE_TTL
        self._clock = clock

    def default_period(self, days: int | None = None) -> AnalyticsPeriod:
        """Window of ``days`` (default configured) ending now, truncated to the minute."""
        end = self._clock().replace(second=0, microsecond=0)
        return AnalyticsPeriod.last_days(days or self._period_days, now=end)

    async def get_analytics(
        self,
        tenant_id: str,
        pipeline_id: str,
        period: AnalyticsPeriod | None = None,
        fresh: bool = False,
    ) -> PipelineAnalytics:
        """Build (or fetch from cache) the analytics report for a pipeline.

        Args:
            tenant_id: Owning tenant.
            pipeline_id: Pipeline to analyse.
            period: Analysis window; defaults to the last ``period_days`` days.
            fresh: Skip the cache and regenerate.

        Raises:
            NotFoundError: If the pipeline does not exist.
        """
        config = await self._store.get_pipeline(tenant_id, pipeline_id)
        period = period or self.default_period()
        cache_key = self._cache_key(pipeline_id, period)

        if not fresh:
            cached = await self._get_cached(cache_key)
            if cached is not None:
                return cached

        started = time.monotonic()
        snapshot = self._ledger.snapshot()
        opportunities = await self._repository.list_for_pipeline(tenant_id, pipeline_id)
        index = MovementIndex(snapshot.for_pipeline(pipeline_id))

        stage_metrics = calculate_stage_metrics(
            index, opportunities, config, period, snapshot.taken_at, self._trend_threshold
        )
        total_value = sum(o.value for o in opportunities)
        bottlenecks = analyze_bottlenecks(
            stage_metrics, config, total_value, self._congestion_threshold
        )
        impact_by_stage = {b.stage_id: b.impact for b in bottlenecks}
        for metrics in stage_metrics:
            metrics.bottleneck_score = impact_by_stage.get(metrics.stage_id, 0.0)

        report = PipelineAnalytics(
            pipeline_id=pipeline_id,
            period=period,
            total_opportunities=len(opportunities),
            total_value=total_value,
            weighted_pipeline_value=round(weighted_pipeline_value(opportunities), 2),
            average_sales_cycle=round(average_sales_cycle(index, config, period), 2),
            overall_conversion_rate=round(overall_conversion_rate(index, config, period), 2),
            stage_metrics=stage_metrics,
            bottleneck_analysis=bottlenecks,
            recommended_actions=generate_recommendations(bottlenecks),
            generated_at=self._clock(),
            ledger_taken_at=snapshot.taken_at,
        )

        duration = time.monotonic() - started
        analytics_generation_duration_seconds.observe(duration)
        logger.info(
            "analytics.report_generated",
            pipeline_id=pipeline_id,
            tenant_id=tenant_id,
            movements=len(snapshot.movements),
            bottlenecks=len(bottlenecks),
            duration_ms=round(duration * 1000, 2),
        )

        await self._set_cached(cache_key, report)
        return report

    @staticmethod
    def _cache_key(pipeline_id: str, period: AnalyticsPeriod) -> str:
        return f"analytics:{pipeline_id}:{_iso(period.start)}:{_iso(period.end)}"

    async def _get_cached(self, cache_key: str) -> PipelineAnalytics | None:
        """Try Redis cache first. Returns None on miss or if Redis unavailable."""
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(cache_key)
            if raw is not None:
                return PipelineAnalytics.model_validate_json(raw)
        except Exception:
            logger.debug("analytics.cache_miss", key=cache_key)
        return None

    async def _set_cached(self, cache_key: str, report: PipelineAnalytics) -> None:
        """Cache result in Redis with TTL. Silently fails if Redis unavailable."""
        if self._redis is None:
            return
        try:
            await self._redis.set(cache_key, report.model_dump_json(), ex=self._cache_ttl)
        except Exception:
            logger.debug("analytics.cache_set_failed", key=cache_key)


def _iso(value: datetime) -> str:
    return value.isoformat()
