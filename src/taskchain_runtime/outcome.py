"""Result of one body invocation: Completed, Failed, or Suspended."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from taskchain_runtime.models import ErrorInfo


@dataclass(frozen=True)
class CallDescriptor:
    """The host call a suspended body is waiting on."""

    task_run_id: str
    stack_run_id: str
    capability_name: str
    method: str
    args: Any = None


@dataclass(frozen=True)
class Completed:
    result: Any = None
    kind: str = "completed"


@dataclass(frozen=True)
class Failed:
    error: ErrorInfo
    kind: str = "failed"


@dataclass(frozen=True)
class Suspended:
    call: CallDescriptor
    kind: str = "suspended"


ExecutionOutcome = Union[Completed, Failed, Suspended]


def outcome_to_dict(outcome: ExecutionOutcome) -> dict[str, Any]:
    """JSON-ready view used by the API and the worker log lines."""
    if isinstance(outcome, Completed):
        return {"kind": outcome.kind, "result": outcome.result}
    if isinstance(outcome, Failed):
        return {"kind": outcome.kind, "error": outcome.error.model_dump(mode="json")}
    call = outcome.call
    return {
        "kind": outcome.kind,
        "call": {
            "task_run_id": call.task_run_id,
            "stack_run_id": call.stack_run_id,
            "capability_name": call.capability_name,
            "method": call.method,
            "args": call.args,
        },
    }
