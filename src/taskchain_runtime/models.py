"""Pydantic records shared by the executor, dispatcher, stores, and API.

Terms used in this file:
- Task Run: one execution of a named task function.
- Stack Run: one node in a Task Run's call tree (the root body invocation or a
  single host-capability call).
- Resume payload: what the dispatcher hands back to a suspended body.
"""

from __future__ import annotations

import traceback
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Lifecycle states persisted by every store backend.
TaskRunStatus = Literal["pending", "running", "completed", "failed"]
StackRunStatus = Literal["pending", "running", "completed", "failed", "waiting_on_child"]

# Operation name reserved for the root Stack Run of every Task Run.
ROOT_OPERATION = "task_init"

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class ErrorInfo(BaseModel):
    """Serialized error stored on failed runs and in resume payloads."""

    type: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, *, include_trace: bool = False) -> ErrorInfo:
        details: dict[str, Any] = {}
        to_details = getattr(exc, "to_details", None)
        if callable(to_details):
            details.update(to_details())
        if include_trace:
            details["traceback"] = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        return cls(type=type(exc).__name__, message=str(exc), details=details)


class HostCall(BaseModel):
    """Input recorded on a child Stack Run: which capability to call and how."""

    capability_name: str = Field(min_length=1)
    method: str = Field(min_length=1)
    args: Any = None

    @property
    def operation(self) -> str:
        return f"{self.capability_name}.{self.method}"


class CallResult(BaseModel):
    """Settled outcome of one child Stack Run, as seen by the task body."""

    stack_run_id: str
    capability_name: str
    method: str
    result: Any = None
    error: ErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResumeValue(BaseModel):
    """Value supplied to a body when it is re-invoked after a host call.

    `result`/`error` describe the most recently settled call. `calls` holds
    every settled call of the Task Run in call order (the last entry is the
    most recent one) for bodies that chain several host calls.
    """

    result: Any = None
    error: ErrorInfo | None = None
    calls: list[CallResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return the result or re-raise the call failure inside the body."""
        if self.error is not None:
            # Local import: errors.py depends on this module.
            from taskchain_runtime.errors import CapabilityError

            raise CapabilityError.from_info(self.error)
        return self.result

    @classmethod
    def following(cls, previous: ResumeValue | None, call: CallResult) -> ResumeValue:
        history = list(previous.calls) if previous is not None else []
        history.append(call)
        return cls(result=call.result, error=call.error, calls=history)


class TaskRun(BaseModel):
    """One logical execution of a named task."""

    id: str
    task_identifier: str
    status: TaskRunStatus = "pending"
    input: Any = None
    result: Any = None
    error: ErrorInfo | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StackRun(BaseModel):
    """One node of a Task Run's call tree."""

    id: str
    task_run_id: str
    parent_stack_run_id: str | None = None
    operation: str
    status: StackRunStatus = "pending"
    input: Any = None
    result: Any = None
    error: ErrorInfo | None = None
    suspended_at: datetime | None = None
    resume_payload: ResumeValue | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_root(self) -> bool:
        return self.parent_stack_run_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def host_call(self) -> HostCall:
        """Parse the recorded call input; raises ValidationError when malformed."""
        return HostCall.model_validate(self.input)


class TaskFunction(BaseModel):
    """A named unit of task logic. `code` is resolved by the body loader."""

    identifier: str = Field(min_length=1)
    code: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class KeyValueEntry(BaseModel):
    """Opaque named value consumed by the keystore capability."""

    key: str
    value: Any = None
    created_at: datetime
    updated_at: datetime


class CreateTaskRunRequest(BaseModel):
    """Request body for POST /task-runs."""

    task_identifier: str = Field(min_length=1)
    input: Any = None


class PutTaskFunctionRequest(BaseModel):
    """Request body for PUT /task-functions/{identifier}."""

    code: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class PutValueRequest(BaseModel):
    """Request body for PUT /keystore/{key}."""

    value: Any = None
