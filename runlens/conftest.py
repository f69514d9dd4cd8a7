"""
Pytest configuration and shared fixtures for runlens tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from runlens.catalog import CatalogWriter
from runlens.config import SourceConfig
from runlens.models import ExecutionRecord, ExecutionStatus


# Saturday 2024-06-15 12:00 UTC
NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: tests that exercise timeouts or thread pools"
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Clock frozen at NOW."""
    return lambda: NOW


@pytest.fixture
def make_record():
    """
    Factory for ExecutionRecord.

    start is given as an offset before NOW; minutes=None leaves the run
    unfinished.
    """
    def _make(
        execution_id: int,
        package_name: str,
        status: int = ExecutionStatus.SUCCEEDED,
        start_offset: timedelta = timedelta(hours=1),
        minutes: Optional[float] = 10,
        executed_as: Optional[str] = None,
    ) -> ExecutionRecord:
        start = NOW - start_offset
        end = start + timedelta(minutes=minutes) if minutes is not None else None
        return ExecutionRecord(
            execution_id=execution_id,
            package_name=package_name,
            status=int(status),
            start_time=start,
            end_time=end,
            folder_name="Folder",
            project_name="Project",
            executed_as=executed_as,
        )

    return _make


@pytest.fixture
def catalog(tmp_path):
    """An empty, initialized catalog on disk."""
    return CatalogWriter(tmp_path / "catalog.db").initialize()


@pytest.fixture
def source(catalog):
    """SourceConfig pointing at the catalog fixture."""
    return SourceConfig(database=str(catalog.db_path), timeout_seconds=5.0)
