"""
Execution Catalog - SQLite schema and writer.

The catalog holds two tables mirroring a workflow-orchestration catalog:

    executions       one row per package run
    event_messages   messages emitted during a run (type 120 = error)

runlens only ever READS the catalog through ExecutionStore. CatalogWriter
exists to create the schema and seed history for demos and tests.

Timestamps are stored as naive UTC text ("YYYY-MM-DD HH:MM:SS") so string
comparison in SQL matches chronological order.

GUARANTEES:
-----------
- Schema version tracked with PRAGMA user_version
- All writes are transactional
- INSERT OR REPLACE keyed on catalog identifiers
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from runlens.errors import DataSourceError
from runlens.models import ERROR_MESSAGE_TYPE, ExecutionRecord


CATALOG_SCHEMA_VERSION = 1

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id INTEGER PRIMARY KEY,
    folder_name TEXT NOT NULL DEFAULT '',
    project_name TEXT NOT NULL DEFAULT '',
    package_name TEXT NOT NULL,
    status INTEGER NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    executed_as_name TEXT
);

CREATE INDEX IF NOT EXISTS idx_executions_start ON executions(start_time);
CREATE INDEX IF NOT EXISTS idx_executions_package ON executions(package_name);
CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);

CREATE TABLE IF NOT EXISTS event_messages (
    event_message_id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_id INTEGER NOT NULL REFERENCES executions(execution_id),
    message_time TEXT NOT NULL,
    message_type INTEGER NOT NULL,
    message TEXT NOT NULL,
    event_name TEXT
);

CREATE INDEX IF NOT EXISTS idx_event_messages_operation ON event_messages(operation_id);
CREATE INDEX IF NOT EXISTS idx_event_messages_time ON event_messages(message_time);
"""


def to_db_time(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as naive UTC catalog text."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(_DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse catalog text into an aware UTC datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class CatalogWriter:
    """Creates a catalog database and writes execution history into it."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise DataSourceError("connect", str(e)) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DataSourceError("write", str(e)) from e
        finally:
            conn.close()

    def initialize(self) -> "CatalogWriter":
        """Create tables if missing. Returns self for chaining."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
            conn.execute(f"PRAGMA user_version = {CATALOG_SCHEMA_VERSION}")
        return self

    def next_execution_id(self) -> int:
        """First execution id not yet used in the catalog."""
        with self._connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(execution_id), 0) FROM executions").fetchone()
        return int(row[0]) + 1

    def add_execution(self, record: ExecutionRecord) -> None:
        self.add_executions([record])

    def add_executions(self, records: Iterable[ExecutionRecord]) -> int:
        """Insert or replace executions. Returns the number written."""
        rows = [
            (
                r.execution_id,
                r.folder_name,
                r.project_name,
                r.package_name,
                int(r.status),
                to_db_time(r.start_time),
                to_db_time(r.end_time),
                r.executed_as,
            )
            for r in records
        ]
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO executions (
                    execution_id, folder_name, project_name, package_name,
                    status, start_time, end_time, executed_as_name
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def add_message(
        self,
        execution_id: int,
        message_time: datetime,
        message: str,
        message_type: int = ERROR_MESSAGE_TYPE,
        event_name: Optional[str] = "OnError",
    ) -> int:
        """Append an event message. Returns its event_message_id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO event_messages (
                    operation_id, message_time, message_type, message, event_name
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (execution_id, to_db_time(message_time), message_type, message, event_name),
            )
            return int(cursor.lastrowid)
