"""SQLite-backed Run Store with automatic table migration."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from taskchain_runtime.errors import StoreError
from taskchain_runtime.models import KeyValueEntry, StackRun, TaskFunction, TaskRun
from taskchain_runtime.storage.base import (
    JSON_FIELDS,
    STACK_RUN_FIELDS,
    STACK_RUN_FILTERS,
    TASK_RUN_FIELDS,
    TASK_RUN_FILTERS,
    dump_json,
    load_json,
    normalize_filters,
    normalize_patch,
    parse_datetime,
    utc_now,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_runs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    task_identifier TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    input TEXT,
    result TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stack_runs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    task_run_id TEXT NOT NULL REFERENCES task_runs(id),
    parent_stack_run_id TEXT,
    operation TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    input TEXT,
    result TEXT,
    error TEXT,
    suspended_at TEXT,
    resume_payload TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_functions (
    identifier TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS keystore (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_task_runs_identifier ON task_runs(task_identifier);
CREATE INDEX IF NOT EXISTS idx_task_runs_status ON task_runs(status);
CREATE INDEX IF NOT EXISTS idx_stack_runs_task ON stack_runs(task_run_id);
CREATE INDEX IF NOT EXISTS idx_stack_runs_status ON stack_runs(status);
CREATE INDEX IF NOT EXISTS idx_stack_runs_parent ON stack_runs(parent_stack_run_id);
"""


class SqliteRunStore:
    """Persist runs in a local SQLite file (or ':memory:').

    One connection is shared behind a lock. Status claims are single
    conditional UPDATE statements, so separate processes sharing the file
    still get at-most-once claims from SQLite's write lock.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open SQLite database {self.path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self.migrate()

    def migrate(self) -> None:
        with self._transaction() as conn:
            if self.path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_task_run(self, *, task_identifier: str, input: Any = None) -> TaskRun:
        task_run_id = str(uuid4())
        now = utc_now().isoformat()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO task_runs (id, task_identifier, status, input, created_at, updated_at)
                VALUES (?, ?, 'pending', ?, ?, ?)
                """,
                (task_run_id, task_identifier, dump_json(input), now, now),
            )
        return self._require_task_run(task_run_id)

    def get_task_run(self, task_run_id: str) -> TaskRun | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM task_runs WHERE id = ?", (task_run_id,)).fetchone()
        return self._row_to_task_run(row) if row else None

    def update_task_run(self, task_run_id: str, patch: Mapping[str, Any]) -> TaskRun:
        changes = normalize_patch(patch, TASK_RUN_FIELDS)
        with self._transaction() as conn:
            cursor = self._update(conn, "task_runs", task_run_id, changes)
        if cursor.rowcount == 0:
            raise KeyError(f"Task run {task_run_id} does not exist")
        return self._require_task_run(task_run_id)

    def query_task_runs(self, filters: Mapping[str, Any] | None = None) -> list[TaskRun]:
        criteria = normalize_filters(filters, TASK_RUN_FILTERS)
        rows = self._select("task_runs", criteria)
        return [self._row_to_task_run(row) for row in rows]

    def create_stack_run(
        self,
        *,
        task_run_id: str,
        operation: str,
        parent_stack_run_id: str | None = None,
        status: str = "pending",
        input: Any = None,
    ) -> StackRun:
        stack_run_id = str(uuid4())
        now = utc_now().isoformat()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO stack_runs (
                    id, task_run_id, parent_stack_run_id, operation, status, input,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stack_run_id,
                    task_run_id,
                    parent_stack_run_id,
                    operation,
                    status,
                    dump_json(input),
                    now,
                    now,
                ),
            )
        return self._require_stack_run(stack_run_id)

    def get_stack_run(self, stack_run_id: str) -> StackRun | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM stack_runs WHERE id = ?", (stack_run_id,)).fetchone()
        return self._row_to_stack_run(row) if row else None

    def update_stack_run(self, stack_run_id: str, patch: Mapping[str, Any]) -> StackRun:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._transaction() as conn:
            cursor = self._update(conn, "stack_runs", stack_run_id, changes)
        if cursor.rowcount == 0:
            raise KeyError(f"Stack run {stack_run_id} does not exist")
        return self._require_stack_run(stack_run_id)

    def query_stack_runs(self, filters: Mapping[str, Any] | None = None) -> list[StackRun]:
        criteria = normalize_filters(filters, STACK_RUN_FILTERS)
        rows = self._select("stack_runs", criteria)
        return [self._row_to_stack_run(row) for row in rows]

    def list_pending_stack_runs(self) -> list[StackRun]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM stack_runs
                WHERE status = 'pending'
                ORDER BY created_at ASC, seq ASC
                """
            ).fetchall()
        return [self._row_to_stack_run(row) for row in rows]

    def transition_stack_run(
        self,
        stack_run_id: str,
        *,
        expected_status: str,
        patch: Mapping[str, Any],
    ) -> StackRun | None:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._transaction() as conn:
            cursor = self._update(
                conn, "stack_runs", stack_run_id, changes, expected_status=expected_status
            )
        if cursor.rowcount == 0:
            return None
        return self._require_stack_run(stack_run_id)

    def claim_stack_run(self, stack_run_id: str) -> StackRun | None:
        return self.transition_stack_run(
            stack_run_id, expected_status="pending", patch={"status": "running"}
        )

    def get_task_function(self, identifier: str) -> TaskFunction | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM task_functions WHERE identifier = ?", (identifier,)
            ).fetchone()
        if row is None:
            return None
        return TaskFunction(
            identifier=row["identifier"],
            code=row["code"],
            metadata=load_json(row["metadata"]) or {},
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def put_task_function(
        self,
        identifier: str,
        code: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskFunction:
        now = utc_now().isoformat()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO task_functions (identifier, code, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(identifier) DO UPDATE SET
                    code = excluded.code,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (identifier, code, dump_json(dict(metadata or {})), now, now),
            )
        stored = self.get_task_function(identifier)
        if stored is None:
            raise StoreError(f"Failed to load task function {identifier} after write")
        return stored

    def get_value(self, key: str) -> Any | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM keystore WHERE key = ?", (key,)).fetchone()
        return load_json(row["value"]) if row else None

    def put_value(self, key: str, value: Any) -> KeyValueEntry:
        now = utc_now().isoformat()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO keystore (key, value, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, dump_json(value) or "null", now, now),
            )
            row = conn.execute("SELECT * FROM keystore WHERE key = ?", (key,)).fetchone()
        return KeyValueEntry(
            key=row["key"],
            value=load_json(row["value"]),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def delete_value(self, key: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM keystore WHERE key = ?", (key,))
        return cursor.rowcount > 0

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"SQLite operation failed: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    @staticmethod
    def _update(
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        changes: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> sqlite3.Cursor:
        # Column names come from the fixed allow-lists in storage.base.
        assignments = [f"{column} = ?" for column in changes]
        values: list[Any] = [_to_column(column, value) for column, value in changes.items()]
        assignments.append("updated_at = ?")
        values.append(utc_now().isoformat())
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?"
        values.append(record_id)
        if expected_status is not None:
            sql += " AND status = ?"
            values.append(expected_status)
        return conn.execute(sql, values)

    def _select(self, table: str, criteria: dict[str, Any]) -> list[sqlite3.Row]:
        clauses: list[str] = []
        values: list[Any] = []
        for column, expected in criteria.items():
            if isinstance(expected, (list, tuple, set, frozenset)):
                items = list(expected)
                if not items:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in items)})")
                values.extend(items)
            elif expected is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                values.append(expected)
        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq ASC"
        with self._transaction() as conn:
            return conn.execute(sql, values).fetchall()

    def _require_task_run(self, task_run_id: str) -> TaskRun:
        record = self.get_task_run(task_run_id)
        if record is None:
            raise StoreError(f"Task run {task_run_id} vanished after write")
        return record

    def _require_stack_run(self, stack_run_id: str) -> StackRun:
        record = self.get_stack_run(stack_run_id)
        if record is None:
            raise StoreError(f"Stack run {stack_run_id} vanished after write")
        return record

    @staticmethod
    def _row_to_task_run(row: sqlite3.Row) -> TaskRun:
        return TaskRun(
            id=row["id"],
            task_identifier=row["task_identifier"],
            status=row["status"],
            input=load_json(row["input"]),
            result=load_json(row["result"]),
            error=load_json(row["error"]),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_stack_run(row: sqlite3.Row) -> StackRun:
        return StackRun(
            id=row["id"],
            task_run_id=row["task_run_id"],
            parent_stack_run_id=row["parent_stack_run_id"],
            operation=row["operation"],
            status=row["status"],
            input=load_json(row["input"]),
            result=load_json(row["result"]),
            error=load_json(row["error"]),
            suspended_at=parse_datetime(row["suspended_at"]),
            resume_payload=load_json(row["resume_payload"]),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


def _to_column(column: str, value: Any) -> Any:
    if column in JSON_FIELDS:
        return dump_json(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
