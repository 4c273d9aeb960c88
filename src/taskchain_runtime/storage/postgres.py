"""PostgreSQL-backed Run Store with automatic table migration."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
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
    normalize_filters,
    normalize_patch,
    parse_datetime,
    utc_now,
)


class PostgresRunStore:
    """Persist runs in PostgreSQL. Claims use `UPDATE ... WHERE status = %s RETURNING *`."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TASKCHAIN_RUNTIME_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_runs (
                    id TEXT PRIMARY KEY,
                    seq BIGSERIAL,
                    task_identifier TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    input JSONB,
                    result JSONB,
                    error JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stack_runs (
                    id TEXT PRIMARY KEY,
                    seq BIGSERIAL,
                    task_run_id TEXT NOT NULL REFERENCES task_runs(id) ON DELETE CASCADE,
                    parent_stack_run_id TEXT,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    input JSONB,
                    result JSONB,
                    error JSONB,
                    suspended_at TIMESTAMPTZ,
                    resume_payload JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_functions (
                    identifier TEXT PRIMARY KEY,
                    code TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS keystore (
                    key TEXT PRIMARY KEY,
                    value JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_runs_identifier
                ON task_runs(task_identifier)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_runs_status
                ON task_runs(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_stack_runs_task
                ON stack_runs(task_run_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_stack_runs_status_created
                ON stack_runs(status, created_at, seq)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_stack_runs_parent
                ON stack_runs(parent_stack_run_id)
                """)

    def close(self) -> None:
        return None

    def create_task_run(self, *, task_identifier: str, input: Any = None) -> TaskRun:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO task_runs (id, task_identifier, status, input, created_at, updated_at)
                VALUES (%s, %s, 'pending', %s, %s, %s)
                RETURNING *
                """,
                (str(uuid4()), task_identifier, self._json_or_null(input), now, now),
            ).fetchone()
        return self._row_to_task_run(row)

    def get_task_run(self, task_run_id: str) -> TaskRun | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM task_runs WHERE id = %s", (task_run_id,)).fetchone()
        return self._row_to_task_run(row) if row else None

    def update_task_run(self, task_run_id: str, patch: Mapping[str, Any]) -> TaskRun:
        changes = normalize_patch(patch, TASK_RUN_FIELDS)
        with self._session() as conn:
            row = self._update(conn, "task_runs", task_run_id, changes)
        if row is None:
            raise KeyError(f"Task run {task_run_id} does not exist")
        return self._row_to_task_run(row)

    def query_task_runs(self, filters: Mapping[str, Any] | None = None) -> list[TaskRun]:
        criteria = normalize_filters(filters, TASK_RUN_FILTERS)
        return [self._row_to_task_run(row) for row in self._select("task_runs", criteria)]

    def create_stack_run(
        self,
        *,
        task_run_id: str,
        operation: str,
        parent_stack_run_id: str | None = None,
        status: str = "pending",
        input: Any = None,
    ) -> StackRun:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO stack_runs (
                    id, task_run_id, parent_stack_run_id, operation, status, input,
                    created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid4()),
                    task_run_id,
                    parent_stack_run_id,
                    operation,
                    status,
                    self._json_or_null(input),
                    now,
                    now,
                ),
            ).fetchone()
        return self._row_to_stack_run(row)

    def get_stack_run(self, stack_run_id: str) -> StackRun | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM stack_runs WHERE id = %s", (stack_run_id,)
            ).fetchone()
        return self._row_to_stack_run(row) if row else None

    def update_stack_run(self, stack_run_id: str, patch: Mapping[str, Any]) -> StackRun:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._session() as conn:
            row = self._update(conn, "stack_runs", stack_run_id, changes)
        if row is None:
            raise KeyError(f"Stack run {stack_run_id} does not exist")
        return self._row_to_stack_run(row)

    def query_stack_runs(self, filters: Mapping[str, Any] | None = None) -> list[StackRun]:
        criteria = normalize_filters(filters, STACK_RUN_FILTERS)
        return [self._row_to_stack_run(row) for row in self._select("stack_runs", criteria)]

    def list_pending_stack_runs(self) -> list[StackRun]:
        with self._session() as conn:
            rows = conn.execute("""
                SELECT * FROM stack_runs
                WHERE status = 'pending'
                ORDER BY created_at ASC, seq ASC
                """).fetchall()
        return [self._row_to_stack_run(row) for row in rows]

    def transition_stack_run(
        self,
        stack_run_id: str,
        *,
        expected_status: str,
        patch: Mapping[str, Any],
    ) -> StackRun | None:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._session() as conn:
            row = self._update(
                conn, "stack_runs", stack_run_id, changes, expected_status=expected_status
            )
        return self._row_to_stack_run(row) if row else None

    def claim_stack_run(self, stack_run_id: str) -> StackRun | None:
        return self.transition_stack_run(
            stack_run_id, expected_status="pending", patch={"status": "running"}
        )

    def get_task_function(self, identifier: str) -> TaskFunction | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM task_functions WHERE identifier = %s", (identifier,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task_function(row)

    def put_task_function(
        self,
        identifier: str,
        code: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskFunction:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO task_functions (identifier, code, metadata, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (identifier) DO UPDATE SET
                    code = EXCLUDED.code,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (identifier, code, self._json_wrapper(dict(metadata or {})), now, now),
            ).fetchone()
        return self._row_to_task_function(row)

    def get_value(self, key: str) -> Any | None:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM keystore WHERE key = %s", (key,)).fetchone()
        return row["value"] if row else None

    def put_value(self, key: str, value: Any) -> KeyValueEntry:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO keystore (key, value, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (key, self._json_wrapper(value), now, now),
            ).fetchone()
        return KeyValueEntry(
            key=row["key"],
            value=row["value"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def delete_value(self, key: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM keystore WHERE key = %s", (key,))
        return cursor.rowcount > 0

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open a connection, commit on success, and surface driver errors as StoreError."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
                conn.commit()
        except self._psycopg.Error as exc:
            raise StoreError(f"PostgreSQL operation failed: {exc}") from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _json_or_null(self, value: Any) -> Any:
        return self._json_wrapper(value) if value is not None else None

    def _update(
        self,
        conn: Any,
        table: str,
        record_id: str,
        changes: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Any:
        # Column names come from the fixed allow-lists in storage.base.
        assignments = [f"{column} = %s" for column in changes]
        values: list[Any] = [
            self._json_or_null(value) if column in JSON_FIELDS else value
            for column, value in changes.items()
        ]
        assignments.append("updated_at = %s")
        values.append(utc_now())
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = %s"
        values.append(record_id)
        if expected_status is not None:
            sql += " AND status = %s"
            values.append(expected_status)
        sql += " RETURNING *"
        return conn.execute(sql, values).fetchone()

    def _select(self, table: str, criteria: dict[str, Any]) -> list[Any]:
        clauses: list[str] = []
        values: list[Any] = []
        for column, expected in criteria.items():
            if isinstance(expected, (list, tuple, set, frozenset)):
                clauses.append(f"{column} = ANY(%s)")
                values.append(list(expected))
            elif expected is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = %s")
                values.append(expected)
        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq ASC"
        with self._session() as conn:
            return conn.execute(sql, values).fetchall()

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    # JSONB columns arrive already decoded by psycopg; a str here is a JSON string value.
    @staticmethod
    def _row_to_task_run(row: Any) -> TaskRun:
        return TaskRun(
            id=str(row["id"]),
            task_identifier=row["task_identifier"],
            status=row["status"],
            input=row["input"],
            result=row["result"],
            error=row["error"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_stack_run(row: Any) -> StackRun:
        return StackRun(
            id=str(row["id"]),
            task_run_id=str(row["task_run_id"]),
            parent_stack_run_id=row["parent_stack_run_id"],
            operation=row["operation"],
            status=row["status"],
            input=row["input"],
            result=row["result"],
            error=row["error"],
            suspended_at=parse_datetime(row["suspended_at"]),
            resume_payload=row["resume_payload"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_task_function(row: Any) -> TaskFunction:
        return TaskFunction(
            identifier=row["identifier"],
            code=row["code"],
            metadata=row["metadata"] or {},
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )
