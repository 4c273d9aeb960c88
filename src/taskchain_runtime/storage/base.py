"""Run Store interface consumed by the executor, dispatcher, and capabilities."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel

from taskchain_runtime.models import KeyValueEntry, StackRun, TaskFunction, TaskRun

# Columns a caller may patch or filter on. Identity and creation time are immutable.
TASK_RUN_FIELDS: frozenset[str] = frozenset({"status", "input", "result", "error"})
STACK_RUN_FIELDS: frozenset[str] = frozenset(
    {"status", "input", "result", "error", "suspended_at", "resume_payload"}
)
TASK_RUN_FILTERS: frozenset[str] = frozenset({"id", "task_identifier", "status"})
STACK_RUN_FILTERS: frozenset[str] = frozenset(
    {"id", "task_run_id", "parent_stack_run_id", "operation", "status"}
)
JSON_FIELDS: frozenset[str] = frozenset({"input", "result", "error", "resume_payload"})


class RunStore(Protocol):
    """Durable storage for Task Runs, Stack Runs, Task Functions, and Key/Value entries.

    Lookups return None for "not found"; backend failures raise StoreError.
    """

    def migrate(self) -> None: ...

    def close(self) -> None: ...

    def create_task_run(self, *, task_identifier: str, input: Any = None) -> TaskRun: ...

    def get_task_run(self, task_run_id: str) -> TaskRun | None: ...

    def update_task_run(self, task_run_id: str, patch: Mapping[str, Any]) -> TaskRun: ...

    def query_task_runs(self, filters: Mapping[str, Any] | None = None) -> list[TaskRun]: ...

    def create_stack_run(
        self,
        *,
        task_run_id: str,
        operation: str,
        parent_stack_run_id: str | None = None,
        status: str = "pending",
        input: Any = None,
    ) -> StackRun: ...

    def get_stack_run(self, stack_run_id: str) -> StackRun | None: ...

    def update_stack_run(self, stack_run_id: str, patch: Mapping[str, Any]) -> StackRun: ...

    def query_stack_runs(self, filters: Mapping[str, Any] | None = None) -> list[StackRun]: ...

    def list_pending_stack_runs(self) -> list[StackRun]: ...

    def transition_stack_run(
        self,
        stack_run_id: str,
        *,
        expected_status: str,
        patch: Mapping[str, Any],
    ) -> StackRun | None: ...

    def claim_stack_run(self, stack_run_id: str) -> StackRun | None: ...

    def get_task_function(self, identifier: str) -> TaskFunction | None: ...

    def put_task_function(
        self,
        identifier: str,
        code: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskFunction: ...

    def get_value(self, key: str) -> Any | None: ...

    def put_value(self, key: str, value: Any) -> KeyValueEntry: ...

    def delete_value(self, key: str) -> bool: ...


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_patch(patch: Mapping[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    """Reject unknown fields and turn nested models into plain JSON-ready values."""
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields in patch: {sorted(unknown)}")
    normalized: dict[str, Any] = {}
    for key, value in patch.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        normalized[key] = value
    return normalized


def normalize_filters(
    filters: Mapping[str, Any] | None, allowed: frozenset[str]
) -> dict[str, Any]:
    payload = dict(filters or {})
    unknown = set(payload) - allowed
    if unknown:
        raise ValueError(f"Unsupported filter fields: {sorted(unknown)}")
    return payload


def matches_filters(record: BaseModel, filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = getattr(record, key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def dump_json(value: Any) -> str | None:
    """Serialize a column value for text-based backends; None stays NULL."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def parse_datetime(raw: Any) -> datetime | None:
    """Parse datetime values returned by database drivers."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw)
    raise TypeError(f"Unsupported datetime value: {type(raw)!r}")
