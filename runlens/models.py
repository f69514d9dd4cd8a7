"""
runlens Data Models - Immutable source rows and derived dashboard entities.

Source rows (ExecutionRecord, ErrorEvent) are facts read from the catalog.
Derived entities are recomputed on demand and never persisted.

Rules:
------
- All models are frozen dataclasses
- All datetimes are timezone-aware UTC
- Running executions have end_time None; nothing invents an end time
- to_dict() produces JSON-safe output (ISO 8601 datetimes)
- Status codes are exposed verbatim alongside their display text
"""

from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from runlens.partitions import classify
from runlens.utils import to_iso


class ExecutionStatus(int, Enum):
    """Catalog execution status codes."""

    CREATED = 1
    RUNNING = 2
    CANCELED = 3
    FAILED = 4
    PENDING = 5
    ENDED_UNEXPECTEDLY = 6
    SUCCEEDED = 7
    STOPPING = 8
    COMPLETED = 9


STATUS_LABELS: Dict[int, str] = {
    ExecutionStatus.CREATED: "Created",
    ExecutionStatus.RUNNING: "Running",
    ExecutionStatus.CANCELED: "Canceled",
    ExecutionStatus.FAILED: "Failed",
    ExecutionStatus.PENDING: "Pending",
    ExecutionStatus.ENDED_UNEXPECTEDLY: "Ended Unexpectedly",
    ExecutionStatus.SUCCEEDED: "Succeeded",
    ExecutionStatus.STOPPING: "Stopping",
    ExecutionStatus.COMPLETED: "Completed",
}

UNKNOWN_STATUS_LABEL = "Unknown"

# Statuses shown on the "currently running" panel.
ACTIVE_STATUSES = frozenset({
    ExecutionStatus.CREATED,
    ExecutionStatus.RUNNING,
    ExecutionStatus.PENDING,
    ExecutionStatus.STOPPING,
})

# Catalog event message type for errors.
ERROR_MESSAGE_TYPE = 120


def status_label(code: int) -> str:
    """Display text for a status code. Unrecognised codes are "Unknown"."""
    return STATUS_LABELS.get(code, UNKNOWN_STATUS_LABEL)


def to_jsonable(value: Any) -> Any:
    """Convert models (and sequences of them) into JSON-safe structures."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


class _Serializable:
    """Mixin providing JSON-safe dict conversion for dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# =============================================================================
# Source rows
# =============================================================================

@dataclass(frozen=True)
class ExecutionRecord(_Serializable):
    """
    One run of a package, as recorded by the catalog.

    Invariant: end_time, when present, is not before start_time.
    """

    execution_id: int
    """Catalog execution identifier."""

    package_name: str
    """Package (workflow) name. Drives business-unit classification."""

    status: int
    """Raw catalog status code."""

    start_time: datetime
    """When the run started (UTC)."""

    end_time: Optional[datetime] = None
    """When the run ended (UTC). None while still running."""

    folder_name: str = ""
    project_name: str = ""

    executed_as: Optional[str] = None
    """Account the run executed as, if recorded."""

    def __post_init__(self) -> None:
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError(
                f"Execution {self.execution_id}: end_time {self.end_time.isoformat()} "
                f"precedes start_time {self.start_time.isoformat()}"
            )

    @property
    def is_finished(self) -> bool:
        return self.end_time is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock duration. None while running."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def elapsed_seconds(self, now: datetime) -> float:
        """Duration treating running work as ongoing through now."""
        end = self.end_time if self.end_time is not None else now
        return max((end - self.start_time).total_seconds(), 0.0)

    @property
    def status_label(self) -> str:
        return status_label(self.status)

    @property
    def business_unit(self) -> str:
        return classify(self.package_name)


@dataclass(frozen=True)
class ErrorEvent(_Serializable):
    """An error-type event message attached to an execution."""

    event_message_id: int
    execution_id: int
    package_name: str
    message_time: datetime
    message: str


# =============================================================================
# Dashboard entities
# =============================================================================

@dataclass(frozen=True)
class ExecutionMetrics(_Serializable):
    """Headline counts for the selected window."""

    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    avg_duration_seconds: float


@dataclass(frozen=True)
class ExecutionTrend(_Serializable):
    date: str
    success_count: int
    failed_count: int
    avg_duration_seconds: float


@dataclass(frozen=True)
class ErrorLog(_Serializable):
    execution_id: int
    package_name: str
    error_time: datetime
    error_code: int
    error_description: str


@dataclass(frozen=True)
class PackageExecution(_Serializable):
    """A single execution row as shown in recent-activity lists."""

    execution_id: int
    package_name: str
    folder_name: str
    project_name: str
    business_unit: str
    status: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_seconds: float
    """Zero while the execution is still running."""


@dataclass(frozen=True)
class CurrentExecution(_Serializable):
    execution_id: int
    package_name: str
    start_time: datetime
    duration_seconds: float
    status: int
    status_description: str
    executed_by: str
    is_long_running: bool


@dataclass(frozen=True)
class PackagePerformance(_Serializable):
    package_name: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    avg_duration_seconds: float
    min_duration_seconds: float
    max_duration_seconds: float
    last_execution_time: datetime
    last_execution_status: str


@dataclass(frozen=True)
class FailurePattern(_Serializable):
    package_name: str
    failure_count: int
    most_common_error: str
    last_failure_time: Optional[datetime]
    failure_rate: float


@dataclass(frozen=True)
class TimelineEntry(_Serializable):
    execution_id: int
    package_name: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_minutes: int
    status: str
    status_color: str


# =============================================================================
# Advanced analytics entities
# =============================================================================

@dataclass(frozen=True)
class ReliabilityScore(_Serializable):
    """Blend of a package's long-window and last-week success rates."""

    package_name: str
    total_executions: int
    success_count: int
    failure_count: int
    success_rate: float
    recent_success_rate: float
    reliability_score: float
    trend: str
    """Improving, Declining or Stable."""


@dataclass(frozen=True)
class MTBFRecord(_Serializable):
    """Mean time between failures for one package."""

    package_name: str
    mtbf_hours: float
    total_executions: int
    failure_count: int
    availability_percent: float
    last_failure: Optional[datetime]
    reliability_status: str


@dataclass(frozen=True)
class ErrorCluster(_Serializable):
    error_category: str
    error_message: str
    frequency: int
    first_occurrence: datetime
    last_occurrence: datetime
    severity_level: str
    affected_packages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SLACompliance(_Serializable):
    package_name: str
    total_executions: int
    sla_threshold_minutes: float
    compliant_executions: int
    compliance_rate: float
    avg_duration_minutes: float
    sla_status: str


@dataclass(frozen=True)
class PerformanceTrendPoint(_Serializable):
    package_name: str
    execution_date: str
    avg_duration_minutes: float
    min_duration_minutes: float
    max_duration_minutes: float
    execution_count: int
    previous_avg_duration: Optional[float]
    performance_trend: str


@dataclass(frozen=True)
class HeatmapCell(_Serializable):
    hour_of_day: int
    day_of_week: int
    """1 = Sunday through 7 = Saturday."""
    execution_count: int
    avg_duration_minutes: float
    failure_count: int


@dataclass(frozen=True)
class PackageCorrelation(_Serializable):
    package1: str
    package2: str
    co_execution_count: int
    correlation_score: float
    avg_time_difference_minutes: float


@dataclass(frozen=True)
class ResourceUtilizationSlot(_Serializable):
    time_slot: datetime
    concurrent_executions: int
    total_cpu_time: float
    peak_memory_mb: float
    utilization_level: str


# =============================================================================
# Snapshots
# =============================================================================

@dataclass(frozen=True)
class DashboardSnapshot(_Serializable):
    """Everything the main dashboard renders for one partition."""

    business_unit: Optional[str]
    metrics: ExecutionMetrics
    trends: Tuple[ExecutionTrend, ...]
    recent_errors: Tuple[ErrorLog, ...]
    recent_executions: Tuple[PackageExecution, ...]
    last_executed_packages: Tuple[PackageExecution, ...]
    current_executions: Tuple[CurrentExecution, ...]
    package_performance: Tuple[PackagePerformance, ...]
    failure_patterns: Tuple[FailurePattern, ...]
    execution_timeline: Tuple[TimelineEntry, ...]
    generated_at: datetime


@dataclass(frozen=True)
class AdvancedSnapshot(_Serializable):
    """Everything the advanced analytics page renders."""

    reliability_scores: Tuple[ReliabilityScore, ...]
    mtbf: Tuple[MTBFRecord, ...]
    error_clusters: Tuple[ErrorCluster, ...]
    sla_compliance: Tuple[SLACompliance, ...]
    performance_trends: Tuple[PerformanceTrendPoint, ...]
    execution_heatmap: Tuple[HeatmapCell, ...]
    package_correlation: Tuple[PackageCorrelation, ...]
    resource_utilization: Tuple[ResourceUtilizationSlot, ...]
    generated_at: datetime
