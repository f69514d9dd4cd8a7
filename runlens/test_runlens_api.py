"""
Dashboard API Tests

Test Coverage:
--------------
1. Service endpoints: root, health, business units, cache stats
2. Dashboard snapshot and single metrics
3. Advanced analytics snapshot and single analytics
4. Error mapping: 503 unconfigured, 400 bad unit, 404 unknown metric,
   502 unreachable catalog
5. Cache-Control reflects the metric TTL, rounded up to whole seconds
6. Read-only: no write verbs
7. Worker pool shut down with the app
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from runlens import __version__
from runlens.api import create_dashboard_app
from runlens.config import DashboardSettings
from runlens.facade import Analytic, DashboardMetric, create_facade
from runlens.models import ExecutionRecord, ExecutionStatus


@pytest.fixture
def seeded_catalog(catalog, now):
    records = []
    for i in range(6):
        start = now - timedelta(days=i + 1, hours=2)
        status = ExecutionStatus.FAILED if i % 3 == 0 else ExecutionStatus.SUCCEEDED
        records.append(ExecutionRecord(i + 1, "CR_Load", status, start, start + timedelta(minutes=15)))
    records.append(ExecutionRecord(
        7, "HIM_Import", ExecutionStatus.RUNNING, now - timedelta(minutes=5), executed_as="svc_him"
    ))
    catalog.add_executions(records)
    catalog.add_message(1, now - timedelta(days=1), "Connection reset by peer")
    catalog.add_message(4, now - timedelta(days=4), "Connection reset by peer")
    return catalog


def make_client(settings, clock):
    facade = create_facade(settings, clock=clock)
    return TestClient(create_dashboard_app(settings=settings, facade=facade))


@pytest.fixture
def client(seeded_catalog, clock):
    settings = DashboardSettings(
        database=str(seeded_catalog.db_path),
        metric_ttl_overrides={"current_executions": 5},
    )
    return make_client(settings, clock)


@pytest.fixture
def unconfigured_client(clock):
    return make_client(DashboardSettings(), clock)


class TestServiceEndpoints:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["version"] == __version__
        assert body["read_only"] is True
        assert body["dashboard_metrics"] == [m.value for m in DashboardMetric]
        assert body["analytics"] == [a.value for a in Analytic]

    def test_health(self, client, unconfigured_client):
        assert client.get("/health").json() == {"status": "ok", "configured": True}
        assert unconfigured_client.get("/health").json() == {"status": "ok", "configured": False}

    def test_business_units(self, client):
        body = client.get("/business-units").json()
        assert body["business_units"] == ["ClientRepo", "ChartNav", "EDS", "HIM", "Uncategorized"]

    def test_cache_stats_after_load(self, client):
        client.get("/dashboard")
        body = client.get("/cache/stats").json()
        assert body["size"] == len(DashboardMetric)
        assert "default/metrics:ALL" in body["keys"]
        assert body["single_flight"] is False


class TestDashboard:

    def test_snapshot(self, client):
        response = client.get("/dashboard")
        assert response.status_code == 200
        body = response.json()
        assert body["business_unit"] is None
        assert body["metrics"]["total_executions"] == 7
        assert body["metrics"]["failed_executions"] == 2
        assert [c["execution_id"] for c in body["current_executions"]] == [7]
        assert body["current_executions"][0]["executed_by"] == "svc_him"
        assert len(body["recent_errors"]) == 2

    def test_snapshot_for_business_unit(self, client):
        body = client.get("/dashboard", params={"business_unit": "him"}).json()
        assert body["business_unit"] == "HIM"
        assert body["metrics"]["total_executions"] == 1
        assert body["recent_errors"] == []

    def test_unknown_business_unit(self, client):
        response = client.get("/dashboard", params={"business_unit": "Payroll"})
        assert response.status_code == 400
        assert "Payroll" in response.json()["detail"]

    def test_single_metric(self, client):
        response = client.get("/dashboard/metrics")
        assert response.status_code == 200
        assert response.headers["cache-control"] == "max-age=30"
        body = response.json()
        assert body["metric"] == "metrics"
        assert body["data"]["total_executions"] == 7

    def test_single_metric_ttl_override(self, client):
        response = client.get("/dashboard/current_executions")
        assert response.headers["cache-control"] == "max-age=5"

    def test_sub_second_ttl_rounds_up(self, seeded_catalog, clock):
        settings = DashboardSettings(
            database=str(seeded_catalog.db_path),
            metric_ttl_overrides={"current_executions": 0.5, "heatmap": 90.2},
        )
        client = make_client(settings, clock)
        assert client.get("/dashboard/current_executions").headers["cache-control"] == "max-age=1"
        assert client.get("/analytics/heatmap").headers["cache-control"] == "max-age=91"

    def test_unknown_metric(self, client):
        assert client.get("/dashboard/throughput").status_code == 404
        # analytics are not dashboard metrics
        assert client.get("/dashboard/mtbf").status_code == 404


class TestAnalytics:

    def test_snapshot(self, client):
        response = client.get("/analytics")
        assert response.status_code == 200
        body = response.json()
        [score] = body["reliability_scores"]
        assert score["package_name"] == "CR_Load"
        assert score["total_executions"] == 6
        assert body["resource_utilization"]

    def test_single_analytic(self, client):
        response = client.get("/analytics/mtbf")
        assert response.status_code == 200
        [record] = response.json()["data"]
        assert record["failure_count"] == 2
        assert record["mtbf_hours"] == 72.0

    def test_unknown_analytic(self, client):
        assert client.get("/analytics/metrics").status_code == 404


class TestErrorMapping:

    def test_unconfigured_is_503(self, unconfigured_client):
        for path in ("/dashboard", "/dashboard/metrics", "/analytics", "/analytics/heatmap"):
            response = unconfigured_client.get(path)
            assert response.status_code == 503, path
            assert "Not configured" in response.json()["detail"]

    def test_unreachable_catalog_is_502(self, tmp_path, clock):
        client = make_client(DashboardSettings(database=str(tmp_path / "missing.db")), clock)
        assert client.get("/dashboard").status_code == 502
        assert client.get("/analytics/heatmap").status_code == 502

    def test_no_write_verbs(self, client):
        assert client.post("/dashboard").status_code == 405
        assert client.delete("/analytics").status_code == 405


class TestLifecycle:

    def test_shutdown_stops_worker_pool(self, seeded_catalog, clock, monkeypatch):
        settings = DashboardSettings(database=str(seeded_catalog.db_path))
        app = create_dashboard_app(settings=settings, facade=create_facade(settings, clock=clock))
        facade = app.state.facade
        stopped = []
        real_shutdown = facade.shutdown

        def recording_shutdown(wait=True):
            stopped.append(wait)
            real_shutdown(wait=wait)

        monkeypatch.setattr(facade, "shutdown", recording_shutdown)

        with TestClient(app) as client:
            assert client.get("/dashboard/metrics").status_code == 200
            assert stopped == []
        assert stopped == [True]

    def test_owned_facade_is_built_from_settings(self, seeded_catalog):
        settings = DashboardSettings(
            database=str(seeded_catalog.db_path),
            single_flight=True,
            metric_ttl_overrides={"mtbf": 120},
        )
        app = create_dashboard_app(settings=settings)
        with TestClient(app) as client:
            body = client.get("/cache/stats").json()
            assert body["single_flight"] is True
            assert client.get("/analytics/mtbf").headers["cache-control"] == "max-age=120"
