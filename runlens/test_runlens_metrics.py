"""
Dashboard Metric Fold Tests

Test Coverage:
--------------
1. Headline metrics math and empty windows
2. Trend ordering
3. Error log ordering and limit
4. Recent executions (running duration is zero)
5. Current executions (elapsed to now, long-running flag, N/A user)
6. Package performance ordering and last status
7. Failure patterns (rate, most common error, N/A)
8. Timeline colours and running bars
"""

from datetime import timedelta

import pytest

from runlens import metrics
from runlens.errors import ComputationError
from runlens.models import ErrorEvent, ExecutionStatus, status_label
from runlens.store import DailyTotals, StatusTotals


class TestStatusLabels:

    @pytest.mark.parametrize("code,label", [
        (1, "Created"), (2, "Running"), (3, "Canceled"), (4, "Failed"), (5, "Pending"),
        (6, "Ended Unexpectedly"), (7, "Succeeded"), (8, "Stopping"), (9, "Completed"),
        (0, "Unknown"), (42, "Unknown"),
    ])
    def test_labels(self, code, label):
        assert status_label(code) == label


class TestHeadline:

    def test_metrics(self):
        m = metrics.build_metrics(StatusTotals(total=10, succeeded=7, failed=3, avg_duration_seconds=125.555))
        assert m.total_executions == 10
        assert m.success_rate == 70.0
        assert m.avg_duration_seconds == 125.56

    def test_empty_window(self):
        m = metrics.build_metrics(StatusTotals(total=0, succeeded=0, failed=0, avg_duration_seconds=None))
        assert m.success_rate == 0.0
        assert m.avg_duration_seconds == 0.0

    def test_inconsistent_totals_rejected(self):
        with pytest.raises(ComputationError):
            metrics.build_metrics(StatusTotals(total=2, succeeded=2, failed=1, avg_duration_seconds=None))

    def test_trends_most_recent_first(self):
        trends = metrics.build_trends([
            DailyTotals("2024-06-13", 1, 0, 60.0),
            DailyTotals("2024-06-15", 2, 1, None),
            DailyTotals("2024-06-14", 0, 1, 30.0),
        ])
        assert [t.date for t in trends] == ["2024-06-15", "2024-06-14", "2024-06-13"]
        assert trends[0].avg_duration_seconds == 0.0


class TestRecentActivity:

    def test_error_logs_newest_first_and_limited(self, now):
        events = [
            ErrorEvent(event_message_id=i, execution_id=100 + i, package_name="CR_Load",
                       message_time=now - timedelta(minutes=i), message=f"error {i}")
            for i in range(1, 6)
        ]
        logs = metrics.build_error_logs(events, limit=3)
        assert [l.error_code for l in logs] == [1, 2, 3]
        assert logs[0].error_description == "error 1"

    def test_running_execution_has_zero_duration(self, make_record):
        records = [
            make_record(1, "CR_Load", start_offset=timedelta(hours=2), minutes=30),
            make_record(2, "CN_Sync", ExecutionStatus.RUNNING, start_offset=timedelta(hours=1), minutes=None),
        ]
        rows = metrics.build_package_executions(records)
        assert [r.execution_id for r in rows] == [2, 1]
        assert rows[0].duration_seconds == 0.0
        assert rows[0].status == "Running"
        assert rows[0].business_unit == "ChartNav"
        assert rows[1].duration_seconds == 1800.0

    def test_current_executions(self, make_record, now):
        records = [
            make_record(1, "CR_Load", ExecutionStatus.RUNNING, start_offset=timedelta(minutes=45), minutes=None, executed_as="svc"),
            make_record(2, "EDS_Feed", ExecutionStatus.PENDING, start_offset=timedelta(minutes=5), minutes=None),
        ]
        current = metrics.build_current_executions(records, now)
        assert [c.execution_id for c in current] == [2, 1]
        pending, running = current
        assert running.duration_seconds == 2700.0
        assert running.is_long_running is True
        assert running.executed_by == "svc"
        assert pending.is_long_running is False
        assert pending.executed_by == "N/A"
        assert pending.status_description == "Pending"

    def test_current_executions_rejects_finished_rows(self, make_record, now):
        with pytest.raises(ComputationError):
            metrics.build_current_executions([make_record(1, "X")], now)


class TestPackagePerformance:

    def test_counts_rates_and_last_status(self, make_record):
        records = [
            make_record(1, "CR_Load", ExecutionStatus.SUCCEEDED, timedelta(hours=5), minutes=10),
            make_record(2, "CR_Load", ExecutionStatus.SUCCEEDED, timedelta(hours=4), minutes=20),
            make_record(3, "CR_Load", ExecutionStatus.FAILED, timedelta(hours=3), minutes=30),
            make_record(4, "CN_Sync", ExecutionStatus.SUCCEEDED, timedelta(hours=2), minutes=5),
        ]
        perf = metrics.build_package_performance(records)
        assert [p.package_name for p in perf] == ["CR_Load", "CN_Sync"]
        cr = perf[0]
        assert (cr.total_executions, cr.successful_executions, cr.failed_executions) == (3, 2, 1)
        assert cr.success_rate == 66.67
        assert cr.avg_duration_seconds == 1200.0
        assert cr.min_duration_seconds == 600.0
        assert cr.max_duration_seconds == 1800.0
        assert cr.last_execution_status == "Failed"
        assert perf[1].last_execution_status == "Success"

    def test_running_latest_reports_failed(self, make_record):
        records = [
            make_record(1, "P", ExecutionStatus.SUCCEEDED, timedelta(hours=2)),
            make_record(2, "P", ExecutionStatus.RUNNING, timedelta(minutes=5), minutes=None),
        ]
        [p] = metrics.build_package_performance(records)
        assert p.last_execution_status == "Failed"
        assert p.avg_duration_seconds == 600.0


class TestFailurePatterns:

    def test_rate_and_most_common_error(self, make_record, now):
        records = [
            make_record(1, "CR_Load", ExecutionStatus.FAILED, timedelta(hours=6)),
            make_record(2, "CR_Load", ExecutionStatus.FAILED, timedelta(hours=4)),
            make_record(3, "CR_Load", ExecutionStatus.SUCCEEDED, timedelta(hours=3)),
            make_record(4, "CR_Load", ExecutionStatus.SUCCEEDED, timedelta(hours=2)),
            make_record(5, "HIM_Import", ExecutionStatus.FAILED, timedelta(hours=1)),
        ]
        events = [
            ErrorEvent(1, 1, "CR_Load", now - timedelta(hours=6), "Deadlock"),
            ErrorEvent(2, 1, "CR_Load", now - timedelta(hours=6), "Timeout"),
            ErrorEvent(3, 2, "CR_Load", now - timedelta(hours=4), "Timeout"),
        ]
        patterns = metrics.build_failure_patterns(records, events)
        assert [p.package_name for p in patterns] == ["CR_Load", "HIM_Import"]
        cr, him = patterns
        assert cr.failure_count == 2
        assert cr.failure_rate == 50.0
        assert cr.most_common_error == "Timeout"
        assert cr.last_failure_time == now - timedelta(hours=4) + timedelta(minutes=10)
        assert him.most_common_error == "N/A"
        assert him.failure_rate == 100.0

    def test_no_failures_no_patterns(self, make_record):
        assert metrics.build_failure_patterns([make_record(1, "P")], []) == []


class TestTimeline:

    def test_colours_and_running_bars(self, make_record, now):
        records = [
            make_record(1, "A", ExecutionStatus.SUCCEEDED, timedelta(hours=3), minutes=15),
            make_record(2, "B", ExecutionStatus.FAILED, timedelta(hours=2), minutes=5),
            make_record(3, "C", ExecutionStatus.RUNNING, timedelta(minutes=90), minutes=None),
            make_record(4, "D", ExecutionStatus.CANCELED, timedelta(minutes=30), minutes=1),
            make_record(5, "E", ExecutionStatus.PENDING, timedelta(minutes=10), minutes=None),
        ]
        timeline = metrics.build_timeline(records, now)
        assert [t.execution_id for t in timeline] == [5, 4, 3, 2, 1]
        colours = {t.execution_id: t.status_color for t in timeline}
        assert colours == {1: "success", 2: "danger", 3: "primary", 4: "warning", 5: "secondary"}
        running = next(t for t in timeline if t.execution_id == 3)
        assert running.duration_minutes == 90
        assert running.end_time is None
