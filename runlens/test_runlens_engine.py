"""
Aggregation Engine Tests - reads through a real SQLite catalog.

Test Coverage:
--------------
1. End-to-end reliability scenario (10 runs, 7 succeeded, 3 failed)
2. Partition filtering reaches the store
3. Default windows per computation
4. Fold failures surface as ComputationError
5. Store failures surface as DataSourceError
6. Argument validation
"""

from datetime import timedelta

import pytest

from runlens import analytics, metrics
from runlens.config import SourceConfig
from runlens.engine import AggregationEngine, create_engine
from runlens.errors import (
    ComputationError,
    DataSourceError,
    UnknownPartitionError,
    ValidationError,
)
from runlens.models import ExecutionRecord, ExecutionStatus
from runlens.store import ExecutionStore


@pytest.fixture
def cr_load_history(catalog, now):
    """CR_Load: 10 runs evenly over 10 days, 7 succeeded, 3 failed."""
    records = []
    for i in range(10):
        start = now - timedelta(days=10 - i, hours=1)
        status = ExecutionStatus.FAILED if i in (1, 4, 8) else ExecutionStatus.SUCCEEDED
        records.append(ExecutionRecord(i + 1, "CR_Load", status, start, start + timedelta(minutes=20)))
    catalog.add_executions(records)
    for record in records:
        if record.status == ExecutionStatus.FAILED:
            catalog.add_message(record.execution_id, record.end_time, "Connection timeout while accessing DB")
    return records


@pytest.fixture
def engine(source, clock):
    return AggregationEngine(ExecutionStore(source), clock=clock)


class TestEndToEnd:

    def test_reliability_scenario(self, engine, cr_load_history):
        [score] = engine.reliability_scores()
        assert score.package_name == "CR_Load"
        assert score.total_executions == 10
        assert score.success_count == 7
        assert score.failure_count == 3
        assert score.success_rate == 70.0

    def test_dashboard_metrics(self, engine, cr_load_history):
        m = engine.metrics()
        assert (m.total_executions, m.successful_executions, m.failed_executions) == (10, 7, 3)
        assert m.success_rate == 70.0
        assert m.avg_duration_seconds == pytest.approx(1200.0, abs=0.5)

    def test_errors_and_clusters(self, engine, cr_load_history):
        errors = engine.errors()
        assert len(errors) == 3
        assert errors[0].error_time >= errors[-1].error_time

        [cluster] = engine.error_clusters()
        assert cluster.error_category == "Timeout"
        assert cluster.frequency == 3
        assert cluster.affected_packages == ("CR_Load",)

    def test_mtbf_and_sla(self, engine, cr_load_history):
        [m] = engine.mtbf()
        assert m.failure_count == 3
        assert m.availability_percent == 70.0
        # failures start 3 days then 4 days apart
        assert m.mtbf_hours == 84.0
        assert m.reliability_status == "Good"

        [sla] = engine.sla_compliance()
        assert sla.total_executions == 7
        assert sla.compliance_rate == 100.0

    def test_resource_utilization_default_window(self, engine, cr_load_history):
        slots = engine.resource_utilization()
        # 7-day window holds the last 6 runs (days 6..1 ago)
        assert sum(s.concurrent_executions for s in slots) == 6


class TestPartitions:

    def test_partition_reaches_store(self, engine, catalog, cr_load_history, now):
        catalog.add_execution(ExecutionRecord(
            100, "CN_Sync", ExecutionStatus.SUCCEEDED, now - timedelta(hours=2), now - timedelta(hours=1)
        ))
        assert engine.metrics("ChartNav").total_executions == 1
        assert engine.metrics("ClientRepo").total_executions == 10
        assert engine.metrics().total_executions == 11
        assert engine.metrics("Uncategorized").total_executions == 0

    def test_unknown_partition(self, engine):
        with pytest.raises(UnknownPartitionError):
            engine.metrics("Payroll")


class TestFailurePropagation:

    def test_fold_failure_becomes_computation_error(self, engine, cr_load_history, monkeypatch):
        def broken(totals):
            raise ZeroDivisionError("division by zero")

        monkeypatch.setattr(metrics, "build_metrics", broken)
        with pytest.raises(ComputationError) as exc:
            engine.metrics()
        assert exc.value.computation == "metrics"

    @pytest.mark.parametrize("error", [
        KeyError("package_name"),
        IndexError("list index out of range"),
        AttributeError("'NoneType' object has no attribute 'date'"),
    ])
    def test_lookup_and_attribute_failures_become_computation_errors(
        self, engine, cr_load_history, monkeypatch, error
    ):
        def broken(records, now, **kwargs):
            raise error

        monkeypatch.setattr(analytics, "compute_heatmap", broken)
        with pytest.raises(ComputationError) as exc:
            engine.heatmap()
        assert exc.value.computation == "heatmap"
        assert exc.value.__cause__ is error

    def test_store_failure_propagates(self, tmp_path, clock):
        engine = create_engine(
            ExecutionStore(SourceConfig(database=str(tmp_path / "missing.db"))), clock=clock
        )
        with pytest.raises(DataSourceError):
            engine.heatmap()

    def test_invalid_windows(self, engine):
        with pytest.raises(ValidationError):
            engine.metrics(days=0)
        with pytest.raises(ValidationError):
            engine.timeline(hours=-1)
        with pytest.raises(ValidationError):
            engine.last_executed(count=0)


class TestRunningWork:

    def test_current_and_timeline(self, engine, catalog, now):
        catalog.add_executions([
            ExecutionRecord(1, "HIM_Import", ExecutionStatus.RUNNING, now - timedelta(minutes=40)),
            ExecutionRecord(2, "HIM_Import", ExecutionStatus.SUCCEEDED, now - timedelta(hours=3), now - timedelta(hours=2)),
            ExecutionRecord(3, "EDS_Feed", ExecutionStatus.FAILED, now - timedelta(hours=30), now - timedelta(hours=29)),
        ])
        [current] = engine.current_executions()
        assert current.execution_id == 1
        assert current.is_long_running is True

        timeline = engine.timeline()
        assert [t.execution_id for t in timeline] == [1, 2]
        assert timeline[0].duration_minutes == 40

        last = engine.last_executed(count=2)
        assert [e.execution_id for e in last] == [1, 2]
