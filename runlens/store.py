"""
Execution Store - read-only access to the execution catalog.

Every call acquires its own connection and releases it before returning.
Nothing is held open between calls, and nothing is ever written.

GUARANTEES:
-----------
- Read-only: connections open with mode=ro
- Parameterized: values are bound, never interpolated into SQL text
- Bounded: each query is interrupted once its timeout elapses
- Loud: connectivity, timeout and malformed rows raise DataSourceError

The store returns rows and simple aggregates. Windowed comparisons,
percentiles and pairings are folded by the engine over the returned rows.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from runlens.catalog import from_db_time, to_db_time
from runlens.config import SourceConfig
from runlens.errors import ConfigurationError, DataSourceError
from runlens.models import (
    ERROR_MESSAGE_TYPE,
    ErrorEvent,
    ExecutionRecord,
    ExecutionStatus,
)
from runlens.partitions import MATCH_ALL, FilterPredicate


logger = logging.getLogger(__name__)

# Progress handler granularity (SQLite VM instructions between checks).
_PROGRESS_STEPS = 1000

_ERROR_WINDOW_COLUMNS = {
    "message_time": "em.message_time",
    "start_time": "e.start_time",
}

_EXECUTION_COLUMNS = (
    "execution_id, folder_name, project_name, package_name, "
    "status, start_time, end_time, executed_as_name"
)


@dataclass(frozen=True)
class StatusTotals:
    """Count/sum aggregate over executions in a window."""

    total: int
    succeeded: int
    failed: int
    avg_duration_seconds: Optional[float]


@dataclass(frozen=True)
class DailyTotals:
    """Per-calendar-day aggregate over executions in a window."""

    date: str
    succeeded: int
    failed: int
    avg_duration_seconds: Optional[float]


class ExecutionStore:
    """
    Read-only query adapter over a SQLite execution catalog.

    Usage:
        store = ExecutionStore(SourceConfig(database="catalog.db"))
        rows = store.fetch_executions(since=cutoff)
    """

    def __init__(self, config: Optional[SourceConfig]):
        if config is None:
            raise ConfigurationError()
        self.config = config.require()
        self.db_path = Path(config.database)

    # =========================================================================
    # Connection handling
    # =========================================================================

    @contextmanager
    def _connect(self, operation: str, timeout_seconds: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """
        Open a read-only connection for a single operation.

        The connection is always closed on exit. sqlite3 errors are
        translated into DataSourceError naming the operation.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.config.timeout_seconds
        uri = self.db_path.resolve().as_uri() + "?mode=ro"

        try:
            conn = sqlite3.connect(uri, uri=True, timeout=timeout)
        except sqlite3.Error as e:
            logger.error(f"[Store] Cannot open catalog {self.db_path}: {e}")
            raise DataSourceError(operation, f"cannot open catalog: {e}") from e

        conn.row_factory = sqlite3.Row
        deadline = time.monotonic() + timeout
        conn.set_progress_handler(
            lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_STEPS
        )

        try:
            yield conn
        except sqlite3.OperationalError as e:
            if "interrupted" in str(e).lower():
                logger.error(f"[Store] {operation} timed out after {timeout}s")
                raise DataSourceError(operation, f"query timed out after {timeout}s") from e
            logger.error(f"[Store] {operation} failed: {e}")
            raise DataSourceError(operation, str(e)) from e
        except sqlite3.Error as e:
            logger.error(f"[Store] {operation} failed: {e}")
            raise DataSourceError(operation, str(e)) from e
        finally:
            conn.close()

    def query(
        self,
        sql: str,
        params: Sequence[object] = (),
        timeout_seconds: Optional[float] = None,
        operation: str = "query",
    ) -> List[sqlite3.Row]:
        """
        Run a parameterized read and return all rows.

        Raises:
            DataSourceError: On connectivity failure, timeout or SQL error
        """
        with self._connect(operation, timeout_seconds) as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    def ping(self) -> int:
        """Verify the catalog is readable. Returns the execution count."""
        rows = self.query("SELECT COUNT(*) AS n FROM executions", operation="ping")
        return int(rows[0]["n"])

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _to_execution(row: sqlite3.Row) -> ExecutionRecord:
        try:
            if row["start_time"] is None:
                raise ValueError("start_time is NULL")
            return ExecutionRecord(
                execution_id=int(row["execution_id"]),
                package_name=row["package_name"],
                status=int(row["status"]),
                start_time=from_db_time(row["start_time"]),
                end_time=from_db_time(row["end_time"]),
                folder_name=row["folder_name"] or "",
                project_name=row["project_name"] or "",
                executed_as=row["executed_as_name"],
            )
        except (TypeError, ValueError) as e:
            raise DataSourceError("parse execution", f"malformed row: {e}") from e

    @staticmethod
    def _to_error_event(row: sqlite3.Row) -> ErrorEvent:
        try:
            return ErrorEvent(
                event_message_id=int(row["event_message_id"]),
                execution_id=int(row["operation_id"]),
                package_name=row["package_name"],
                message_time=from_db_time(row["message_time"]),
                message=row["message"] or "",
            )
        except (TypeError, ValueError) as e:
            raise DataSourceError("parse error event", f"malformed row: {e}") from e

    # =========================================================================
    # Typed reads
    # =========================================================================

    def fetch_executions(
        self,
        since: Optional[datetime] = None,
        predicate: FilterPredicate = MATCH_ALL,
        statuses: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        """
        Executions started at or after `since`, newest first.

        Args:
            since: Window start. None for no window.
            predicate: Package-name filter
            statuses: Restrict to these status codes
            limit: Maximum number of rows
        """
        conditions, params = self._window_conditions("start_time", since)

        clause, pred_params = predicate.to_sql("package_name")
        conditions.append(clause)
        params.extend(pred_params)

        if statuses is not None:
            codes = sorted(int(s) for s in statuses)
            if not codes:
                return []
            conditions.append(f"status IN ({', '.join('?' for _ in codes)})")
            params.extend(codes)

        sql = (
            f"SELECT {_EXECUTION_COLUMNS} FROM executions "
            f"WHERE {' AND '.join(conditions)} "
            f"ORDER BY start_time DESC, execution_id DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        rows = self.query(sql, params, operation="fetch executions")
        return [self._to_execution(r) for r in rows]

    def fetch_error_events(
        self,
        since: datetime,
        predicate: FilterPredicate = MATCH_ALL,
        failed_only: bool = False,
        window_column: str = "message_time",
        limit: Optional[int] = None,
    ) -> List[ErrorEvent]:
        """
        Error messages (type 120) joined to their executions, newest first.

        Args:
            since: Window start
            predicate: Package-name filter
            failed_only: Only messages of executions with status Failed
            window_column: "message_time" or "start_time" (execution start)
            limit: Maximum number of rows
        """
        if window_column not in _ERROR_WINDOW_COLUMNS:
            raise ValueError(
                f"Invalid window column: '{window_column}'. "
                f"Valid: {sorted(_ERROR_WINDOW_COLUMNS)}"
            )

        conditions = [
            "em.message_type = ?",
            f"{_ERROR_WINDOW_COLUMNS[window_column]} >= ?",
        ]
        params: List[object] = [ERROR_MESSAGE_TYPE, to_db_time(since)]

        clause, pred_params = predicate.to_sql("e.package_name")
        conditions.append(clause)
        params.extend(pred_params)

        if failed_only:
            conditions.append("e.status = ?")
            params.append(int(ExecutionStatus.FAILED))

        sql = (
            "SELECT em.event_message_id, em.operation_id, em.message_time, em.message, "
            "e.package_name "
            "FROM event_messages em "
            "JOIN executions e ON em.operation_id = e.execution_id "
            f"WHERE {' AND '.join(conditions)} "
            "ORDER BY em.message_time DESC, em.event_message_id DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        rows = self.query(sql, params, operation="fetch error events")
        return [self._to_error_event(r) for r in rows]

    def fetch_status_totals(
        self,
        since: datetime,
        predicate: FilterPredicate = MATCH_ALL,
    ) -> StatusTotals:
        """Total, succeeded, failed and mean finished duration in a window."""
        clause, pred_params = predicate.to_sql("package_name")
        sql = f"""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS succeeded,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS failed,
                AVG(CASE WHEN end_time IS NOT NULL
                    THEN (julianday(end_time) - julianday(start_time)) * 86400.0 END) AS avg_duration
            FROM executions
            WHERE start_time >= ? AND {clause}
        """
        params: List[object] = [
            int(ExecutionStatus.SUCCEEDED),
            int(ExecutionStatus.FAILED),
            to_db_time(since),
        ]
        params.extend(pred_params)

        row = self.query(sql, params, operation="fetch status totals")[0]
        return StatusTotals(
            total=int(row["total"]),
            succeeded=int(row["succeeded"]),
            failed=int(row["failed"]),
            avg_duration_seconds=row["avg_duration"],
        )

    def fetch_daily_totals(
        self,
        since: datetime,
        predicate: FilterPredicate = MATCH_ALL,
    ) -> List[DailyTotals]:
        """Per-day succeeded/failed counts and mean finished duration, newest day first."""
        clause, pred_params = predicate.to_sql("package_name")
        sql = f"""
            SELECT
                substr(start_time, 1, 10) AS day,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS succeeded,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS failed,
                AVG(CASE WHEN end_time IS NOT NULL
                    THEN (julianday(end_time) - julianday(start_time)) * 86400.0 END) AS avg_duration
            FROM executions
            WHERE start_time >= ? AND {clause}
            GROUP BY day
            ORDER BY day DESC
        """
        params: List[object] = [
            int(ExecutionStatus.SUCCEEDED),
            int(ExecutionStatus.FAILED),
            to_db_time(since),
        ]
        params.extend(pred_params)

        rows = self.query(sql, params, operation="fetch daily totals")
        return [
            DailyTotals(
                date=row["day"],
                succeeded=int(row["succeeded"]),
                failed=int(row["failed"]),
                avg_duration_seconds=row["avg_duration"],
            )
            for row in rows
        ]

    @staticmethod
    def _window_conditions(
        column: str,
        since: Optional[datetime],
    ) -> Tuple[List[str], List[object]]:
        conditions: List[str] = []
        params: List[object] = []
        if since is not None:
            conditions.append(f"{column} >= ?")
            params.append(to_db_time(since))
        if not conditions:
            conditions.append("1=1")
        return conditions, params
