"""In-memory Run Store for tests and single-process use."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from taskchain_runtime.models import KeyValueEntry, StackRun, TaskFunction, TaskRun
from taskchain_runtime.storage.base import (
    STACK_RUN_FIELDS,
    STACK_RUN_FILTERS,
    TASK_RUN_FIELDS,
    TASK_RUN_FILTERS,
    matches_filters,
    normalize_filters,
    normalize_patch,
    utc_now,
)


class InMemoryRunStore:
    """Thread-safe dictionary-backed store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._task_runs: dict[str, TaskRun] = {}
        self._stack_runs: dict[str, StackRun] = {}
        self._functions: dict[str, TaskFunction] = {}
        self._values: dict[str, KeyValueEntry] = {}

    def migrate(self) -> None:
        return None

    def close(self) -> None:
        return None

    def create_task_run(self, *, task_identifier: str, input: Any = None) -> TaskRun:
        now = utc_now()
        record = TaskRun(
            id=str(uuid4()),
            task_identifier=task_identifier,
            status="pending",
            input=input,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._task_runs[record.id] = record
        return record.model_copy(deep=True)

    def get_task_run(self, task_run_id: str) -> TaskRun | None:
        with self._lock:
            record = self._task_runs.get(task_run_id)
        return record.model_copy(deep=True) if record else None

    def update_task_run(self, task_run_id: str, patch: Mapping[str, Any]) -> TaskRun:
        changes = normalize_patch(patch, TASK_RUN_FIELDS)
        with self._lock:
            current = self._task_runs.get(task_run_id)
            if current is None:
                raise KeyError(f"Task run {task_run_id} does not exist")
            updated = TaskRun.model_validate(
                {**current.model_dump(), **changes, "updated_at": utc_now()}
            )
            self._task_runs[task_run_id] = updated
        return updated.model_copy(deep=True)

    def query_task_runs(self, filters: Mapping[str, Any] | None = None) -> list[TaskRun]:
        criteria = normalize_filters(filters, TASK_RUN_FILTERS)
        with self._lock:
            records = list(self._task_runs.values())
        return [
            record.model_copy(deep=True)
            for record in records
            if matches_filters(record, criteria)
        ]

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
        record = StackRun(
            id=str(uuid4()),
            task_run_id=task_run_id,
            parent_stack_run_id=parent_stack_run_id,
            operation=operation,
            status=status,
            input=input,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._stack_runs[record.id] = record
        return record.model_copy(deep=True)

    def get_stack_run(self, stack_run_id: str) -> StackRun | None:
        with self._lock:
            record = self._stack_runs.get(stack_run_id)
        return record.model_copy(deep=True) if record else None

    def update_stack_run(self, stack_run_id: str, patch: Mapping[str, Any]) -> StackRun:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._lock:
            current = self._stack_runs.get(stack_run_id)
            if current is None:
                raise KeyError(f"Stack run {stack_run_id} does not exist")
            updated = self._apply(current, changes)
        return updated.model_copy(deep=True)

    def query_stack_runs(self, filters: Mapping[str, Any] | None = None) -> list[StackRun]:
        criteria = normalize_filters(filters, STACK_RUN_FILTERS)
        with self._lock:
            records = list(self._stack_runs.values())
        return [
            record.model_copy(deep=True)
            for record in records
            if matches_filters(record, criteria)
        ]

    def list_pending_stack_runs(self) -> list[StackRun]:
        # dicts keep insertion order, so equal timestamps still come out FIFO.
        with self._lock:
            pending = [record for record in self._stack_runs.values() if record.status == "pending"]
        pending.sort(key=lambda record: record.created_at)
        return [record.model_copy(deep=True) for record in pending]

    def transition_stack_run(
        self,
        stack_run_id: str,
        *,
        expected_status: str,
        patch: Mapping[str, Any],
    ) -> StackRun | None:
        changes = normalize_patch(patch, STACK_RUN_FIELDS)
        with self._lock:
            current = self._stack_runs.get(stack_run_id)
            if current is None or current.status != expected_status:
                return None
            updated = self._apply(current, changes)
        return updated.model_copy(deep=True)

    def claim_stack_run(self, stack_run_id: str) -> StackRun | None:
        return self.transition_stack_run(
            stack_run_id, expected_status="pending", patch={"status": "running"}
        )

    def get_task_function(self, identifier: str) -> TaskFunction | None:
        with self._lock:
            record = self._functions.get(identifier)
        return record.model_copy(deep=True) if record else None

    def put_task_function(
        self,
        identifier: str,
        code: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskFunction:
        now = utc_now()
        with self._lock:
            existing = self._functions.get(identifier)
            record = TaskFunction(
                identifier=identifier,
                code=code,
                metadata=dict(metadata or {}),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._functions[identifier] = record
        return record.model_copy(deep=True)

    def get_value(self, key: str) -> Any | None:
        with self._lock:
            entry = self._values.get(key)
        return entry.model_copy(deep=True).value if entry else None

    def put_value(self, key: str, value: Any) -> KeyValueEntry:
        now = utc_now()
        with self._lock:
            existing = self._values.get(key)
            entry = KeyValueEntry(
                key=key,
                value=value,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._values[key] = entry
        return entry.model_copy(deep=True)

    def delete_value(self, key: str) -> bool:
        with self._lock:
            return self._values.pop(key, None) is not None

    def _apply(self, current: StackRun, changes: dict[str, Any]) -> StackRun:
        updated = StackRun.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        self._stack_runs[current.id] = updated
        return updated
