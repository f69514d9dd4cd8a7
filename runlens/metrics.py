"""
Dashboard metric folds.

Pure functions turning catalog rows into the entities rendered on the main
dashboard: headline counts, daily trend, recent errors and executions,
running work, per-package performance, failure patterns and the timeline.

Rules:
------
- No I/O: rows come in, entities go out
- "Now" is always passed in, never read from the system clock
- Output order is explicit and deterministic
- Durations average finished runs only unless a fold says otherwise
- Rows that break an invariant raise ComputationError
"""

from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from runlens.errors import ComputationError
from runlens.models import (
    ACTIVE_STATUSES,
    CurrentExecution,
    ErrorEvent,
    ErrorLog,
    ExecutionMetrics,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrend,
    FailurePattern,
    PackageExecution,
    PackagePerformance,
    TimelineEntry,
)
from runlens.store import DailyTotals, StatusTotals
from runlens.utils import mean, percentage, round2


# Runs active for longer than this are flagged on the running panel.
LONG_RUNNING_SECONDS = 1800

NOT_AVAILABLE = "N/A"

STATUS_COLORS: Dict[int, str] = {
    ExecutionStatus.SUCCEEDED: "success",
    ExecutionStatus.FAILED: "danger",
    ExecutionStatus.RUNNING: "primary",
    ExecutionStatus.CANCELED: "warning",
}
DEFAULT_STATUS_COLOR = "secondary"


def require_unique_executions(records: Sequence[ExecutionRecord], computation: str) -> None:
    """Raise ComputationError if any execution_id appears twice."""
    seen = set()
    for record in records:
        if record.execution_id in seen:
            raise ComputationError(
                computation, f"execution {record.execution_id} appears more than once"
            )
        seen.add(record.execution_id)


def _finished_durations(records: Iterable[ExecutionRecord]) -> List[float]:
    return [r.duration_seconds for r in records if r.duration_seconds is not None]


# =============================================================================
# Headline and trend
# =============================================================================

def build_metrics(totals: StatusTotals) -> ExecutionMetrics:
    """Headline counts from a status aggregate."""
    if totals.succeeded + totals.failed > totals.total:
        raise ComputationError(
            "metrics",
            f"succeeded ({totals.succeeded}) + failed ({totals.failed}) "
            f"exceeds total ({totals.total})",
        )
    avg = totals.avg_duration_seconds
    return ExecutionMetrics(
        total_executions=totals.total,
        successful_executions=totals.succeeded,
        failed_executions=totals.failed,
        success_rate=percentage(totals.succeeded, totals.total),
        avg_duration_seconds=round2(avg) if avg is not None else 0.0,
    )


def build_trends(daily: Sequence[DailyTotals]) -> List[ExecutionTrend]:
    """Daily trend, most recent day first."""
    trends = [
        ExecutionTrend(
            date=d.date,
            success_count=d.succeeded,
            failed_count=d.failed,
            avg_duration_seconds=round2(d.avg_duration_seconds) if d.avg_duration_seconds is not None else 0.0,
        )
        for d in daily
    ]
    if len({t.date for t in trends}) != len(trends):
        raise ComputationError("trends", "duplicate calendar day in daily totals")
    return sorted(trends, key=lambda t: t.date, reverse=True)


# =============================================================================
# Recent activity
# =============================================================================

def build_error_logs(events: Sequence[ErrorEvent], limit: int) -> List[ErrorLog]:
    """Most recent error messages, newest first."""
    ordered = sorted(
        events, key=lambda e: (e.message_time, e.event_message_id), reverse=True
    )
    return [
        ErrorLog(
            execution_id=e.execution_id,
            package_name=e.package_name,
            error_time=e.message_time,
            error_code=e.event_message_id,
            error_description=e.message,
        )
        for e in ordered[:limit]
    ]


def to_package_execution(record: ExecutionRecord) -> PackageExecution:
    duration = record.duration_seconds
    return PackageExecution(
        execution_id=record.execution_id,
        package_name=record.package_name,
        folder_name=record.folder_name,
        project_name=record.project_name,
        business_unit=record.business_unit,
        status=record.status_label,
        start_time=record.start_time,
        end_time=record.end_time,
        duration_seconds=round2(duration) if duration is not None else 0.0,
    )


def build_package_executions(
    records: Sequence[ExecutionRecord],
    limit: Optional[int] = None,
) -> List[PackageExecution]:
    """Executions newest first, optionally truncated."""
    require_unique_executions(records, "executions")
    ordered = sorted(records, key=lambda r: (r.start_time, r.execution_id), reverse=True)
    if limit is not None:
        ordered = ordered[:limit]
    return [to_package_execution(r) for r in ordered]


def build_current_executions(
    records: Sequence[ExecutionRecord],
    now: datetime,
) -> List[CurrentExecution]:
    """Active executions with elapsed time measured up to now."""
    require_unique_executions(records, "current_executions")
    current = []
    for record in sorted(records, key=lambda r: (r.start_time, r.execution_id), reverse=True):
        if record.status not in ACTIVE_STATUSES:
            raise ComputationError(
                "current_executions",
                f"execution {record.execution_id} has inactive status {record.status}",
            )
        elapsed = max((now - record.start_time).total_seconds(), 0.0)
        current.append(CurrentExecution(
            execution_id=record.execution_id,
            package_name=record.package_name,
            start_time=record.start_time,
            duration_seconds=round2(elapsed),
            status=record.status,
            status_description=record.status_label,
            executed_by=record.executed_as or NOT_AVAILABLE,
            is_long_running=elapsed > LONG_RUNNING_SECONDS,
        ))
    return current


# =============================================================================
# Per-package summaries
# =============================================================================

def _group_by_package(records: Iterable[ExecutionRecord]) -> Dict[str, List[ExecutionRecord]]:
    groups: Dict[str, List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        groups[record.package_name].append(record)
    return groups


def build_package_performance(records: Sequence[ExecutionRecord]) -> List[PackagePerformance]:
    """
    Per-package counts, rates and duration spread.

    Ordered by total executions descending, then package name.
    """
    require_unique_executions(records, "package_performance")
    results = []
    for package, runs in _group_by_package(records).items():
        succeeded = sum(1 for r in runs if r.status == ExecutionStatus.SUCCEEDED)
        failed = sum(1 for r in runs if r.status == ExecutionStatus.FAILED)
        durations = _finished_durations(runs)
        latest = max(runs, key=lambda r: (r.start_time, r.execution_id))

        results.append(PackagePerformance(
            package_name=package,
            total_executions=len(runs),
            successful_executions=succeeded,
            failed_executions=failed,
            success_rate=percentage(succeeded, len(runs)),
            avg_duration_seconds=round2(mean(durations)) if durations else 0.0,
            min_duration_seconds=round2(min(durations)) if durations else 0.0,
            max_duration_seconds=round2(max(durations)) if durations else 0.0,
            last_execution_time=latest.start_time,
            last_execution_status=(
                "Success" if latest.status == ExecutionStatus.SUCCEEDED else "Failed"
            ),
        ))

    return sorted(results, key=lambda p: (-p.total_executions, p.package_name))


def _most_common_message(events: Sequence[ErrorEvent]) -> str:
    if not events:
        return NOT_AVAILABLE
    counts = Counter(e.message for e in events)
    latest: Dict[str, datetime] = {}
    for e in events:
        if e.message not in latest or e.message_time > latest[e.message]:
            latest[e.message] = e.message_time
    # Most frequent; ties go to the most recently seen message
    return max(counts, key=lambda m: (counts[m], latest[m], m))


def build_failure_patterns(
    records: Sequence[ExecutionRecord],
    error_events: Sequence[ErrorEvent],
) -> List[FailurePattern]:
    """
    Packages that failed in the window.

    failure_rate is failures over all of the package's runs in the window.
    most_common_error only considers messages of failed executions.
    """
    require_unique_executions(records, "failure_patterns")
    failed_ids = {r.execution_id for r in records if r.status == ExecutionStatus.FAILED}

    events_by_package: Dict[str, List[ErrorEvent]] = defaultdict(list)
    for event in error_events:
        if event.execution_id in failed_ids:
            events_by_package[event.package_name].append(event)

    results = []
    for package, runs in _group_by_package(records).items():
        failures = [r for r in runs if r.status == ExecutionStatus.FAILED]
        if not failures:
            continue
        end_times = [r.end_time for r in failures if r.end_time is not None]
        results.append(FailurePattern(
            package_name=package,
            failure_count=len(failures),
            most_common_error=_most_common_message(events_by_package.get(package, [])),
            last_failure_time=max(end_times) if end_times else None,
            failure_rate=percentage(len(failures), len(runs)),
        ))

    return sorted(results, key=lambda f: (-f.failure_count, f.package_name))


# =============================================================================
# Timeline
# =============================================================================

def status_color(code: int) -> str:
    return STATUS_COLORS.get(code, DEFAULT_STATUS_COLOR)


def build_timeline(records: Sequence[ExecutionRecord], now: datetime) -> List[TimelineEntry]:
    """Execution bars for the timeline, newest first. Running bars extend to now."""
    require_unique_executions(records, "timeline")
    ordered = sorted(records, key=lambda r: (r.start_time, r.execution_id), reverse=True)
    return [
        TimelineEntry(
            execution_id=r.execution_id,
            package_name=r.package_name,
            start_time=r.start_time,
            end_time=r.end_time,
            duration_minutes=int(r.elapsed_seconds(now) // 60),
            status=r.status_label,
            status_color=status_color(r.status),
        )
        for r in ordered
    ]
