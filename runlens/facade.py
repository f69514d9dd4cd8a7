"""
Aggregation Facade - concurrent, cached dashboard loads.

The facade is the only entry point the outer layers use. It validates the
request, fans every metric out to a worker thread, routes each one through
the result cache, and joins them into a snapshot.

Rules:
------
- Configuration and arguments are validated before any fan-out
- All-or-fail: one failed metric fails the whole snapshot
- Metrics still running when a sibling fails may finish and fill the cache
- Bulk loads and single-metric fetches share cache entries
- Subscribers hear about recomputations, never about cache hits
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from runlens.cache import ResultCache
from runlens.config import DEFAULT_MAX_WORKERS, DashboardSettings, SourceConfig
from runlens.engine import AggregationEngine
from runlens.errors import ConfigurationError, UnknownMetricError
from runlens.models import AdvancedSnapshot, DashboardSnapshot
from runlens.notifications import RefreshNotifier
from runlens.partitions import Partitioner, get_partitioner
from runlens.store import ExecutionStore
from runlens.utils import ensure_utc, utc_now


logger = logging.getLogger(__name__)

ALL_PARTITIONS = "ALL"


class DashboardMetric(str, Enum):
    """Metrics shown on the main dashboard. Partition-aware."""

    METRICS = "metrics"
    TRENDS = "trends"
    ERRORS = "errors"
    EXECUTIONS = "executions"
    LAST_EXECUTED = "last_executed"
    CURRENT_EXECUTIONS = "current_executions"
    PACKAGE_PERFORMANCE = "package_performance"
    FAILURE_PATTERNS = "failure_patterns"
    TIMELINE = "timeline"


class Analytic(str, Enum):
    """Advanced analytics. Loaded in bulk without a partition."""

    RELIABILITY = "reliability"
    MTBF = "mtbf"
    ERROR_CLUSTERS = "error_clusters"
    SLA_COMPLIANCE = "sla_compliance"
    PERFORMANCE_TRENDS = "performance_trends"
    HEATMAP = "heatmap"
    CORRELATION = "correlation"
    RESOURCE_UTILIZATION = "resource_utilization"


MetricName = Union[DashboardMetric, Analytic]

# Engine method backing each metric
_ENGINE_METHODS: Dict[str, str] = {
    DashboardMetric.METRICS.value: "metrics",
    DashboardMetric.TRENDS.value: "trends",
    DashboardMetric.ERRORS.value: "errors",
    DashboardMetric.EXECUTIONS.value: "executions",
    DashboardMetric.LAST_EXECUTED.value: "last_executed",
    DashboardMetric.CURRENT_EXECUTIONS.value: "current_executions",
    DashboardMetric.PACKAGE_PERFORMANCE.value: "package_performance",
    DashboardMetric.FAILURE_PATTERNS.value: "failure_patterns",
    DashboardMetric.TIMELINE.value: "timeline",
    Analytic.RELIABILITY.value: "reliability_scores",
    Analytic.MTBF.value: "mtbf",
    Analytic.ERROR_CLUSTERS.value: "error_clusters",
    Analytic.SLA_COMPLIANCE.value: "sla_compliance",
    Analytic.PERFORMANCE_TRENDS.value: "performance_trends",
    Analytic.HEATMAP.value: "heatmap",
    Analytic.CORRELATION.value: "package_correlation",
    Analytic.RESOURCE_UTILIZATION.value: "resource_utilization",
}


def resolve_metric(name: Union[str, MetricName]) -> MetricName:
    """
    Parse a metric name.

    Raises:
        UnknownMetricError: If the name is not a dashboard metric or analytic
    """
    value = name.value if isinstance(name, Enum) else str(name).strip().lower()
    for enum_type in (DashboardMetric, Analytic):
        try:
            return enum_type(value)
        except ValueError:
            continue
    raise UnknownMetricError(str(name), valid=_ENGINE_METHODS.keys())


EngineFactory = Callable[[SourceConfig], AggregationEngine]


class AggregationFacade:
    """
    Cached, concurrent access to every dashboard computation.

    Usage:
        facade = AggregationFacade(ResultCache())
        snapshot = await facade.load_dashboard(source, "ChartNav")
    """

    def __init__(
        self,
        cache: ResultCache,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        notifier: Optional[RefreshNotifier] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], datetime] = utc_now,
        engine_factory: Optional[EngineFactory] = None,
        partitioner: Optional[Partitioner] = None,
    ):
        self.cache = cache
        self.notifier = notifier or RefreshNotifier()
        self._ttl_overrides: Dict[str, float] = {}
        for name, ttl in (ttl_overrides or {}).items():
            self._ttl_overrides[resolve_metric(name).value] = ttl
        self._clock = clock
        self._partitioner = partitioner or get_partitioner()
        self._engine_factory = engine_factory or self._default_engine
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="runlens-agg"
        )

    def _default_engine(self, source: SourceConfig) -> AggregationEngine:
        return AggregationEngine(
            ExecutionStore(source), clock=self._clock, partitioner=self._partitioner
        )

    # =========================================================================
    # Validation and keys
    # =========================================================================

    @staticmethod
    def _require_source(source: Optional[SourceConfig]) -> SourceConfig:
        if source is None:
            raise ConfigurationError()
        return source.require()

    def _resolve_partition(self, partition: Optional[str]) -> Optional[str]:
        return self._partitioner.resolve_label(partition)

    @staticmethod
    def cache_key(source: SourceConfig, metric: MetricName, partition: Optional[str]) -> str:
        """e.g. "default/metrics:ALL" or "default/metrics:ChartNav"."""
        return f"{source.name}/{metric.value}:{partition or ALL_PARTITIONS}"

    def ttl_for(self, metric: MetricName) -> float:
        return self._ttl_overrides.get(metric.value, self.cache.default_ttl_seconds)

    # =========================================================================
    # Synchronous core
    # =========================================================================

    def compute(
        self,
        source: SourceConfig,
        metric: MetricName,
        partition: Optional[str] = None,
    ) -> Any:
        """
        One metric through the cache. Blocks while computing.

        Arguments must already be validated; use fetch_metric otherwise.
        """
        key = self.cache_key(source, metric, partition)

        def recompute() -> Any:
            started = time.perf_counter()
            engine = self._engine_factory(source)
            value = getattr(engine, _ENGINE_METHODS[metric.value])(partition)
            if isinstance(value, list):
                value = tuple(value)
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(f"[Facade] recomputed {key} in {elapsed_ms:.0f}ms")
            self.notifier.notify(key, value)
            return value

        return self.cache.get_or_compute(key, recompute, self.ttl_for(metric))

    async def _compute_async(
        self,
        source: SourceConfig,
        metric: MetricName,
        partition: Optional[str],
    ) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(self.compute, source, metric, partition)
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def fetch_metric(
        self,
        source: Optional[SourceConfig],
        name: Union[str, MetricName],
        partition: Optional[str] = None,
    ) -> Any:
        """
        Fetch a single metric or analytic.

        Shares cache entries with load_dashboard / load_advanced_analytics.

        Raises:
            ConfigurationError: If source is unusable
            UnknownMetricError: If name is not recognised
            UnknownPartitionError: If partition is not recognised
        """
        source = self._require_source(source)
        metric = resolve_metric(name)
        label = self._resolve_partition(partition)
        return await self._compute_async(source, metric, label)

    async def load_dashboard(
        self,
        source: Optional[SourceConfig],
        partition: Optional[str] = None,
    ) -> DashboardSnapshot:
        """
        Load every dashboard metric concurrently.

        Raises:
            ConfigurationError: Before any computation, if source is unusable
            UnknownPartitionError: If partition is not recognised
            DataSourceError / ComputationError: If any metric fails
        """
        source = self._require_source(source)
        label = self._resolve_partition(partition)
        started = time.perf_counter()

        results = await asyncio.gather(
            *(self._compute_async(source, m, label) for m in DashboardMetric)
        )
        values = dict(zip(DashboardMetric, results))

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[Facade] dashboard ({label or ALL_PARTITIONS}) loaded in {elapsed_ms:.0f}ms"
        )

        return DashboardSnapshot(
            business_unit=label,
            metrics=values[DashboardMetric.METRICS],
            trends=values[DashboardMetric.TRENDS],
            recent_errors=values[DashboardMetric.ERRORS],
            recent_executions=values[DashboardMetric.EXECUTIONS],
            last_executed_packages=values[DashboardMetric.LAST_EXECUTED],
            current_executions=values[DashboardMetric.CURRENT_EXECUTIONS],
            package_performance=values[DashboardMetric.PACKAGE_PERFORMANCE],
            failure_patterns=values[DashboardMetric.FAILURE_PATTERNS],
            execution_timeline=values[DashboardMetric.TIMELINE],
            generated_at=ensure_utc(self._clock()),
        )

    async def load_advanced_analytics(self, source: Optional[SourceConfig]) -> AdvancedSnapshot:
        """
        Load all eight analytics concurrently, across all partitions.

        Raises:
            ConfigurationError: Before any computation, if source is unusable
            DataSourceError / ComputationError: If any analytic fails
        """
        source = self._require_source(source)
        started = time.perf_counter()

        results = await asyncio.gather(
            *(self._compute_async(source, a, None) for a in Analytic)
        )
        values = dict(zip(Analytic, results))

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"[Facade] advanced analytics loaded in {elapsed_ms:.0f}ms")

        return AdvancedSnapshot(
            reliability_scores=values[Analytic.RELIABILITY],
            mtbf=values[Analytic.MTBF],
            error_clusters=values[Analytic.ERROR_CLUSTERS],
            sla_compliance=values[Analytic.SLA_COMPLIANCE],
            performance_trends=values[Analytic.PERFORMANCE_TRENDS],
            execution_heatmap=values[Analytic.HEATMAP],
            package_correlation=values[Analytic.CORRELATION],
            resource_utilization=values[Analytic.RESOURCE_UTILIZATION],
            generated_at=ensure_utc(self._clock()),
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool."""
        self._executor.shutdown(wait=wait)


def create_facade(
    settings: DashboardSettings,
    notifier: Optional[RefreshNotifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> AggregationFacade:
    """
    Factory function to create an AggregationFacade from service settings.

    Honours the cache TTL, per-metric TTL overrides, single-flight and
    worker count.
    """
    return AggregationFacade(
        cache=ResultCache(
            default_ttl_seconds=settings.cache_ttl_seconds,
            single_flight=settings.single_flight,
        ),
        ttl_overrides=settings.metric_ttl_overrides,
        notifier=notifier,
        max_workers=settings.max_workers,
        clock=clock,
    )
