"""
Advanced analytics folds.

Eight independent derivations over execution history:

A. Reliability scores
B. Mean time between failures
C. Error clusters
D. SLA compliance
E. Performance trends
F. Execution heatmap
G. Package correlation
H. Resource utilization

Each fold takes the rows already restricted to its window plus "now" and
returns entities in an explicit order. Windowed comparisons (previous
failure, previous day), percentiles and self-pairings are computed here
rather than in SQL.

Rules:
------
- Minimum sample sizes are parameters with the dashboard defaults
- Running work counts up to now in F and H; it is excluded from B, D and E
- Rates and averages round half-up to two decimals
- Classification thresholds are ordered tables, checked top-down
- Ties are broken by name so output never depends on storage order
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from runlens.metrics import require_unique_executions
from runlens.models import (
    ErrorCluster,
    ErrorEvent,
    ExecutionRecord,
    ExecutionStatus,
    HeatmapCell,
    MTBFRecord,
    PackageCorrelation,
    PerformanceTrendPoint,
    ReliabilityScore,
    ResourceUtilizationSlot,
    SLACompliance,
)
from runlens.utils import mean, percentage, percentile_cont, round2, tier


# Shared sample-size floors
MIN_PACKAGE_EXECUTIONS = 5
MIN_CLUSTER_FREQUENCY = 3
MIN_CO_EXECUTIONS = 3
MIN_DAILY_EXECUTIONS = 2

# Reliability
RECENT_WINDOW_DAYS = 7

# MTBF
MTBF_CEILING_HOURS = 720.0
MTBF_TIERS = ((168.0, "Excellent"), (72.0, "Good"), (24.0, "Fair"))

# Error clustering
ERROR_MESSAGE_MAX_LENGTH = 200
ERROR_CATEGORY_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Timeout", ("timeout", "time out")),
    ("Connection", ("connection",)),
    ("Permission", ("permission", "access")),
    ("Memory", ("memory",)),
    ("Validation", ("validation",)),
    ("Deadlock", ("deadlock",)),
)
DEFAULT_ERROR_CATEGORY = "Other"
SEVERITY_TIERS = ((50, "Critical"), (20, "High"), (10, "Medium"))

# SLA
SLA_PERCENTILE = 0.95
SLA_BUFFER = 1.2
SLA_TIERS = ((95.0, "Excellent"), (85.0, "Good"), (70.0, "Fair"))

# Performance trend
DEGRADING_FACTOR = 1.1
IMPROVING_FACTOR = 0.9

# Correlation
CORRELATION_WINDOW_MINUTES = 60
CORRELATION_TOP_N = 20

# Resource utilization
UTILIZATION_TIERS = ((20, "Critical"), (10, "High"), (5, "Medium"))


def _group_by_package(records: Sequence[ExecutionRecord]) -> Dict[str, List[ExecutionRecord]]:
    groups: Dict[str, List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        groups[record.package_name].append(record)
    return groups


def _minutes(seconds: float) -> float:
    return seconds / 60.0


# =============================================================================
# A. Reliability Scores
# =============================================================================

def compute_reliability_scores(
    records: Sequence[ExecutionRecord],
    now: datetime,
    recent_days: int = RECENT_WINDOW_DAYS,
    min_executions: int = MIN_PACKAGE_EXECUTIONS,
) -> List[ReliabilityScore]:
    """
    Blend long-window and recent success rates per package.

    Packages with no runs in the recent window get a recent rate of 0,
    which pulls the blended score down and marks the trend Declining.

    Ordered by reliability_score descending, then total executions
    descending, then package name.
    """
    require_unique_executions(records, "reliability")
    recent_cutoff = now - timedelta(days=recent_days)

    results = []
    for package, runs in _group_by_package(records).items():
        total = len(runs)
        if total < min_executions:
            continue

        succeeded = sum(1 for r in runs if r.status == ExecutionStatus.SUCCEEDED)
        failed = sum(1 for r in runs if r.status == ExecutionStatus.FAILED)
        success_rate = percentage(succeeded, total)

        recent = [r for r in runs if r.start_time >= recent_cutoff]
        recent_succeeded = sum(1 for r in recent if r.status == ExecutionStatus.SUCCEEDED)
        recent_rate = percentage(recent_succeeded, len(recent)) if recent else 0.0

        if recent_rate > success_rate:
            trend = "Improving"
        elif recent_rate < success_rate:
            trend = "Declining"
        else:
            trend = "Stable"

        results.append(ReliabilityScore(
            package_name=package,
            total_executions=total,
            success_count=succeeded,
            failure_count=failed,
            success_rate=success_rate,
            recent_success_rate=recent_rate,
            reliability_score=round2((success_rate + recent_rate) / 2),
            trend=trend,
        ))

    return sorted(
        results,
        key=lambda s: (-s.reliability_score, -s.total_executions, s.package_name),
    )


# =============================================================================
# B. Mean Time Between Failures
# =============================================================================

def compute_mtbf(
    records: Sequence[ExecutionRecord],
    min_executions: int = MIN_PACKAGE_EXECUTIONS,
    ceiling_hours: float = MTBF_CEILING_HOURS,
) -> List[MTBFRecord]:
    """
    Average gap between consecutive failure starts per package.

    A package with fewer than two failures has no gap and reports the
    ceiling. Availability is the share of runs that did not fail.

    Ordered by MTBF descending, then package name.
    """
    require_unique_executions(records, "mtbf")

    results = []
    for package, runs in _group_by_package(records).items():
        total = len(runs)
        if total < min_executions:
            continue

        failures = sorted(
            (r for r in runs if r.status == ExecutionStatus.FAILED),
            key=lambda r: (r.start_time, r.execution_id),
        )
        gaps = [
            (current.start_time - previous.start_time).total_seconds() / 3600.0
            for previous, current in zip(failures, failures[1:])
        ]
        mtbf = round2(mean(gaps)) if gaps else ceiling_hours

        results.append(MTBFRecord(
            package_name=package,
            mtbf_hours=mtbf,
            total_executions=total,
            failure_count=len(failures),
            availability_percent=percentage(total - len(failures), total),
            last_failure=failures[-1].start_time if failures else None,
            reliability_status=tier(mtbf, MTBF_TIERS, "Poor"),
        ))

    return sorted(results, key=lambda m: (-m.mtbf_hours, m.package_name))


# =============================================================================
# C. Error Clusters
# =============================================================================

def categorize_error(message: Optional[str]) -> str:
    """First keyword rule matching the message, case-insensitively."""
    lowered = (message or "").lower()
    for category, keywords in ERROR_CATEGORY_RULES:
        if any(k in lowered for k in keywords):
            return category
    return DEFAULT_ERROR_CATEGORY


def severity_for(frequency: int) -> str:
    return tier(frequency, SEVERITY_TIERS, "Low", strict=True)


@dataclass
class _ClusterAccumulator:
    frequency: int
    first: datetime
    last: datetime
    packages: Set[str]


def compute_error_clusters(
    events: Sequence[ErrorEvent],
    min_frequency: int = MIN_CLUSTER_FREQUENCY,
) -> List[ErrorCluster]:
    """
    Group error messages by (category, message truncated to 200 chars).

    Ordered by frequency descending, then category and message.
    """
    clusters: Dict[Tuple[str, str], _ClusterAccumulator] = {}
    for event in events:
        message = (event.message or "")[:ERROR_MESSAGE_MAX_LENGTH]
        key = (categorize_error(event.message), message)
        acc = clusters.get(key)
        if acc is None:
            clusters[key] = _ClusterAccumulator(
                frequency=1,
                first=event.message_time,
                last=event.message_time,
                packages={event.package_name},
            )
            continue
        acc.frequency += 1
        acc.first = min(acc.first, event.message_time)
        acc.last = max(acc.last, event.message_time)
        acc.packages.add(event.package_name)

    results = [
        ErrorCluster(
            error_category=category,
            error_message=message,
            frequency=acc.frequency,
            first_occurrence=acc.first,
            last_occurrence=acc.last,
            severity_level=severity_for(acc.frequency),
            affected_packages=tuple(sorted(acc.packages)),
        )
        for (category, message), acc in clusters.items()
        if acc.frequency >= min_frequency
    ]
    return sorted(
        results, key=lambda c: (-c.frequency, c.error_category, c.error_message)
    )


# =============================================================================
# D. SLA Compliance
# =============================================================================

def compute_sla_compliance(
    records: Sequence[ExecutionRecord],
    min_executions: int = MIN_PACKAGE_EXECUTIONS,
    percentile: float = SLA_PERCENTILE,
    buffer: float = SLA_BUFFER,
) -> List[SLACompliance]:
    """
    Share of successful runs finishing within 1.2x the package's p95.

    Only succeeded, finished runs count. Ordered by compliance rate
    descending, then package name.
    """
    require_unique_executions(records, "sla_compliance")
    eligible = [
        r for r in records
        if r.status == ExecutionStatus.SUCCEEDED and r.is_finished
    ]

    results = []
    for package, runs in _group_by_package(eligible).items():
        total = len(runs)
        if total < min_executions:
            continue

        durations = [_minutes(r.duration_seconds) for r in runs]
        threshold = percentile_cont(durations, percentile) * buffer
        compliant = sum(1 for d in durations if d <= threshold)
        compliance = percentage(compliant, total)

        results.append(SLACompliance(
            package_name=package,
            total_executions=total,
            sla_threshold_minutes=round2(threshold),
            compliant_executions=compliant,
            compliance_rate=compliance,
            avg_duration_minutes=round2(mean(durations)),
            sla_status=tier(compliance, SLA_TIERS, "Poor"),
        ))

    return sorted(results, key=lambda s: (-s.compliance_rate, s.package_name))


# =============================================================================
# E. Performance Trends
# =============================================================================

def classify_performance(avg: float, previous: Optional[float]) -> str:
    if previous is None:
        return "Stable"
    if avg > previous * DEGRADING_FACTOR:
        return "Degrading"
    if avg < previous * IMPROVING_FACTOR:
        return "Improving"
    return "Stable"


def compute_performance_trends(
    records: Sequence[ExecutionRecord],
    min_daily_executions: int = MIN_DAILY_EXECUTIONS,
) -> List[PerformanceTrendPoint]:
    """
    Daily duration statistics per package, compared with the previous day.

    "Previous day" is the package's preceding calendar day that had any
    successful finished run. The comparison is made before sparse days
    (fewer than min_daily_executions runs) are dropped from the output.

    Ordered by package name ascending, then date descending.
    """
    require_unique_executions(records, "performance_trends")
    eligible = [
        r for r in records
        if r.status == ExecutionStatus.SUCCEEDED and r.is_finished
    ]

    points = []
    for package, runs in _group_by_package(eligible).items():
        by_day: Dict[date, List[float]] = defaultdict(list)
        for r in runs:
            by_day[r.start_time.date()].append(_minutes(r.duration_seconds))

        previous_avg: Optional[float] = None
        for day in sorted(by_day):
            durations = by_day[day]
            avg = mean(durations)
            if len(durations) >= min_daily_executions:
                points.append(PerformanceTrendPoint(
                    package_name=package,
                    execution_date=day.isoformat(),
                    avg_duration_minutes=round2(avg),
                    min_duration_minutes=round2(min(durations)),
                    max_duration_minutes=round2(max(durations)),
                    execution_count=len(durations),
                    previous_avg_duration=round2(previous_avg) if previous_avg is not None else None,
                    performance_trend=classify_performance(avg, previous_avg),
                ))
            previous_avg = avg

    # Two stable sorts: date descending within package ascending
    points.sort(key=lambda p: p.execution_date, reverse=True)
    points.sort(key=lambda p: p.package_name)
    return points


# =============================================================================
# F. Execution Heatmap
# =============================================================================

def day_of_week(dt: datetime) -> int:
    """1 = Sunday through 7 = Saturday."""
    return dt.isoweekday() % 7 + 1


def compute_heatmap(records: Sequence[ExecutionRecord], now: datetime) -> List[HeatmapCell]:
    """
    Activity per (weekday, hour of start).

    Running executions contribute their elapsed time up to now. Cells with
    no executions are absent. Ordered by weekday, then hour.
    """
    require_unique_executions(records, "heatmap")
    cells: Dict[Tuple[int, int], List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        cells[(day_of_week(record.start_time), record.start_time.hour)].append(record)

    results = [
        HeatmapCell(
            hour_of_day=hour,
            day_of_week=weekday,
            execution_count=len(runs),
            avg_duration_minutes=round2(mean(_minutes(r.elapsed_seconds(now)) for r in runs)),
            failure_count=sum(1 for r in runs if r.status == ExecutionStatus.FAILED),
        )
        for (weekday, hour), runs in cells.items()
    ]
    return sorted(results, key=lambda c: (c.day_of_week, c.hour_of_day))


# =============================================================================
# G. Package Correlation
# =============================================================================

@dataclass
class _PairAccumulator:
    count: int = 0
    total_minutes: float = 0.0
    days: Set[date] = field(default_factory=set)


def compute_package_correlation(
    records: Sequence[ExecutionRecord],
    window_minutes: int = CORRELATION_WINDOW_MINUTES,
    min_co_executions: int = MIN_CO_EXECUTIONS,
    top_n: int = CORRELATION_TOP_N,
) -> List[PackageCorrelation]:
    """
    Pairs of packages that repeatedly start close together on the same day.

    Each pair of executions of different packages, on the same calendar day
    and starting at most window_minutes apart, is one co-execution. The
    pair is named in lexicographic order so (A, B) and (B, A) are one pair.

    correlation_score is the share of covered days (days with any
    execution in the input) on which the pair co-ran at least once.

    Ordered by co-execution count descending, then pair names; top_n kept.
    """
    require_unique_executions(records, "package_correlation")
    window = timedelta(minutes=window_minutes)

    by_day: Dict[date, List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        by_day[record.start_time.date()].append(record)
    covered_days = len(by_day)

    pairs: Dict[Tuple[str, str], _PairAccumulator] = defaultdict(_PairAccumulator)
    for day, runs in by_day.items():
        runs = sorted(runs, key=lambda r: (r.start_time, r.execution_id))
        for i, first in enumerate(runs):
            for second in runs[i + 1:]:
                gap = second.start_time - first.start_time
                if gap > window:
                    break
                if first.package_name == second.package_name:
                    continue
                key = tuple(sorted((first.package_name, second.package_name)))
                acc = pairs[key]
                acc.count += 1
                acc.total_minutes += gap.total_seconds() / 60.0
                acc.days.add(day)

    results = [
        PackageCorrelation(
            package1=p1,
            package2=p2,
            co_execution_count=acc.count,
            correlation_score=percentage(len(acc.days), covered_days),
            avg_time_difference_minutes=round2(acc.total_minutes / acc.count),
        )
        for (p1, p2), acc in pairs.items()
        if acc.count >= min_co_executions
    ]
    results.sort(key=lambda c: (-c.co_execution_count, c.package1, c.package2))
    return results[:top_n]


# =============================================================================
# H. Resource Utilization
# =============================================================================

def utilization_level(concurrent: int) -> str:
    return tier(concurrent, UTILIZATION_TIERS, "Low", strict=True)


def compute_resource_utilization(
    records: Sequence[ExecutionRecord],
    now: datetime,
) -> List[ResourceUtilizationSlot]:
    """
    Executions and busy seconds per hour slot of start time.

    total_cpu_time is the summed elapsed time of executions starting in the
    slot; running work counts up to now. Memory is not recorded by the
    catalog, so peak_memory_mb is always 0. Ordered by slot descending.
    """
    require_unique_executions(records, "resource_utilization")
    slots: Dict[datetime, List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        slot = record.start_time.replace(minute=0, second=0, microsecond=0)
        slots[slot].append(record)

    results = [
        ResourceUtilizationSlot(
            time_slot=slot,
            concurrent_executions=len(runs),
            total_cpu_time=round2(sum(r.elapsed_seconds(now) for r in runs)),
            peak_memory_mb=0.0,
            utilization_level=utilization_level(len(runs)),
        )
        for slot, runs in slots.items()
    ]
    return sorted(results, key=lambda s: s.time_slot, reverse=True)
