"""
Aggregation Engine - windowed reads plus folds.

Each public method is one independent, stateless computation:
read rows for a window (and optional business unit) from the store, then
fold them into dashboard entities. Methods share nothing but the store
and the clock, so any subset can run concurrently.

Failure policy:
---------------
- Store failures propagate as DataSourceError
- Fold failures surface as ComputationError naming the computation
- Nothing is ever replaced by an empty or zeroed result
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from runlens import analytics, metrics
from runlens.errors import ComputationError, ValidationError
from runlens.models import (
    ACTIVE_STATUSES,
    CurrentExecution,
    ErrorCluster,
    ErrorLog,
    ExecutionMetrics,
    ExecutionStatus,
    ExecutionTrend,
    FailurePattern,
    HeatmapCell,
    MTBFRecord,
    PackageCorrelation,
    PackageExecution,
    PackagePerformance,
    PerformanceTrendPoint,
    ReliabilityScore,
    ResourceUtilizationSlot,
    SLACompliance,
    TimelineEntry,
)
from runlens.partitions import FilterPredicate, Partitioner, get_partitioner
from runlens.store import ExecutionStore
from runlens.utils import ensure_utc, utc_now


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_DAYS = 30
PERFORMANCE_TREND_DAYS = 14
RESOURCE_UTILIZATION_DAYS = 7
TIMELINE_HOURS = 24
RECENT_LIMIT = 50
LAST_EXECUTED_COUNT = 10


class AggregationEngine:
    """
    Computes dashboard metrics and advanced analytics from one store.

    Usage:
        engine = AggregationEngine(ExecutionStore(source))
        scores = engine.reliability_scores()
    """

    def __init__(
        self,
        store: ExecutionStore,
        clock: Callable[[], datetime] = utc_now,
        partitioner: Optional[Partitioner] = None,
    ):
        self.store = store
        self._clock = clock
        self._partitioner = partitioner or get_partitioner()

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def _predicate(self, partition: Optional[str]) -> FilterPredicate:
        return self._partitioner.to_filter_predicate(partition)

    def _since(self, now: datetime, days: Optional[int] = None, hours: Optional[int] = None) -> datetime:
        if days is not None and days <= 0:
            raise ValidationError(f"Window must be positive, got {days} days")
        if hours is not None and hours <= 0:
            raise ValidationError(f"Window must be positive, got {hours} hours")
        return now - timedelta(days=days or 0, hours=hours or 0)

    @staticmethod
    def _fold(computation: str, fold: Callable[..., T], *args, **kwargs) -> T:
        """Run a fold, converting unexpected failures to ComputationError."""
        try:
            return fold(*args, **kwargs)
        except ComputationError:
            logger.error(f"[Engine] {computation} rejected its input")
            raise
        except (ArithmeticError, AttributeError, LookupError, TypeError, ValueError) as e:
            logger.error(f"[Engine] {computation} failed: {e}")
            raise ComputationError(computation, str(e)) from e

    # =========================================================================
    # Dashboard metrics
    # =========================================================================

    def metrics(self, partition: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> ExecutionMetrics:
        predicate = self._predicate(partition)
        totals = self.store.fetch_status_totals(self._since(self.now(), days=days), predicate)
        return self._fold("metrics", metrics.build_metrics, totals)

    def trends(self, partition: Optional[str] = None, days: int = DEFAULT_WINDOW_DAYS) -> List[ExecutionTrend]:
        predicate = self._predicate(partition)
        daily = self.store.fetch_daily_totals(self._since(self.now(), days=days), predicate)
        return self._fold("trends", metrics.build_trends, daily)

    def errors(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        limit: int = RECENT_LIMIT,
    ) -> List[ErrorLog]:
        """Latest error messages of failed executions started in the window."""
        predicate = self._predicate(partition)
        events = self.store.fetch_error_events(
            self._since(self.now(), days=days),
            predicate,
            failed_only=True,
            window_column="start_time",
            limit=limit,
        )
        return self._fold("errors", metrics.build_error_logs, events, limit)

    def executions(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        limit: int = RECENT_LIMIT,
    ) -> List[PackageExecution]:
        predicate = self._predicate(partition)
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days), predicate=predicate, limit=limit
        )
        return self._fold("executions", metrics.build_package_executions, records, limit)

    def last_executed(
        self,
        partition: Optional[str] = None,
        count: int = LAST_EXECUTED_COUNT,
    ) -> List[PackageExecution]:
        """Most recent executions regardless of age."""
        if count <= 0:
            raise ValidationError(f"count must be positive, got {count}")
        predicate = self._predicate(partition)
        records = self.store.fetch_executions(predicate=predicate, limit=count)
        return self._fold("last_executed", metrics.build_package_executions, records, count)

    def current_executions(self, partition: Optional[str] = None) -> List[CurrentExecution]:
        predicate = self._predicate(partition)
        records = self.store.fetch_executions(predicate=predicate, statuses=ACTIVE_STATUSES)
        return self._fold(
            "current_executions", metrics.build_current_executions, records, self.now()
        )

    def package_performance(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
    ) -> List[PackagePerformance]:
        predicate = self._predicate(partition)
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days), predicate=predicate
        )
        return self._fold("package_performance", metrics.build_package_performance, records)

    def failure_patterns(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
    ) -> List[FailurePattern]:
        predicate = self._predicate(partition)
        since = self._since(self.now(), days=days)
        records = self.store.fetch_executions(since=since, predicate=predicate)
        events = self.store.fetch_error_events(
            since, predicate, failed_only=True, window_column="start_time"
        )
        return self._fold("failure_patterns", metrics.build_failure_patterns, records, events)

    def timeline(
        self,
        partition: Optional[str] = None,
        hours: int = TIMELINE_HOURS,
    ) -> List[TimelineEntry]:
        now = self.now()
        predicate = self._predicate(partition)
        records = self.store.fetch_executions(
            since=self._since(now, hours=hours), predicate=predicate
        )
        return self._fold("timeline", metrics.build_timeline, records, now)

    # =========================================================================
    # Advanced analytics
    # =========================================================================

    def reliability_scores(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        min_executions: int = analytics.MIN_PACKAGE_EXECUTIONS,
    ) -> List[ReliabilityScore]:
        now = self.now()
        records = self.store.fetch_executions(
            since=self._since(now, days=days), predicate=self._predicate(partition)
        )
        return self._fold(
            "reliability",
            analytics.compute_reliability_scores,
            records,
            now,
            min_executions=min_executions,
        )

    def mtbf(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        min_executions: int = analytics.MIN_PACKAGE_EXECUTIONS,
    ) -> List[MTBFRecord]:
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days), predicate=self._predicate(partition)
        )
        return self._fold("mtbf", analytics.compute_mtbf, records, min_executions=min_executions)

    def error_clusters(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        min_frequency: int = analytics.MIN_CLUSTER_FREQUENCY,
    ) -> List[ErrorCluster]:
        events = self.store.fetch_error_events(
            self._since(self.now(), days=days),
            self._predicate(partition),
            window_column="message_time",
        )
        return self._fold(
            "error_clusters", analytics.compute_error_clusters, events, min_frequency=min_frequency
        )

    def sla_compliance(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        min_executions: int = analytics.MIN_PACKAGE_EXECUTIONS,
    ) -> List[SLACompliance]:
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days),
            predicate=self._predicate(partition),
            statuses=[ExecutionStatus.SUCCEEDED],
        )
        return self._fold(
            "sla_compliance", analytics.compute_sla_compliance, records, min_executions=min_executions
        )

    def performance_trends(
        self,
        partition: Optional[str] = None,
        days: int = PERFORMANCE_TREND_DAYS,
        min_daily_executions: int = analytics.MIN_DAILY_EXECUTIONS,
    ) -> List[PerformanceTrendPoint]:
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days),
            predicate=self._predicate(partition),
            statuses=[ExecutionStatus.SUCCEEDED],
        )
        return self._fold(
            "performance_trends",
            analytics.compute_performance_trends,
            records,
            min_daily_executions=min_daily_executions,
        )

    def heatmap(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
    ) -> List[HeatmapCell]:
        now = self.now()
        records = self.store.fetch_executions(
            since=self._since(now, days=days), predicate=self._predicate(partition)
        )
        return self._fold("heatmap", analytics.compute_heatmap, records, now)

    def package_correlation(
        self,
        partition: Optional[str] = None,
        days: int = DEFAULT_WINDOW_DAYS,
        min_co_executions: int = analytics.MIN_CO_EXECUTIONS,
    ) -> List[PackageCorrelation]:
        records = self.store.fetch_executions(
            since=self._since(self.now(), days=days), predicate=self._predicate(partition)
        )
        return self._fold(
            "package_correlation",
            analytics.compute_package_correlation,
            records,
            min_co_executions=min_co_executions,
        )

    def resource_utilization(
        self,
        partition: Optional[str] = None,
        days: int = RESOURCE_UTILIZATION_DAYS,
    ) -> List[ResourceUtilizationSlot]:
        now = self.now()
        records = self.store.fetch_executions(
            since=self._since(now, days=days), predicate=self._predicate(partition)
        )
        return self._fold("resource_utilization", analytics.compute_resource_utilization, records, now)


def create_engine(
    store: ExecutionStore,
    clock: Callable[[], datetime] = utc_now,
) -> AggregationEngine:
    """Factory function to create an AggregationEngine."""
    return AggregationEngine(store=store, clock=clock)
