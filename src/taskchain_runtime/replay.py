"""Memoized host calls for bodies that chain several capability calls.

Bodies are re-run from the start on every resume. CallReplay answers each
call site, in order, from the settled history carried by the resume value and
only reaches `invoke` (which suspends) for the first call without a record.

    def body(resume_value, invoke, task_input):
        calls = CallReplay(resume_value, invoke)
        user = calls.call("database", "get_user", {"id": task_input["user_id"]})
        calls.call("keystore", "set", {"key": "last_user", "value": user["name"]})
        return user
"""

from __future__ import annotations

from typing import Any

from taskchain_runtime.bodies import InvokeFn
from taskchain_runtime.errors import CapabilityError, ReplayMismatchError
from taskchain_runtime.models import CallResult, ResumeValue


class CallReplay:
    def __init__(self, resume_value: ResumeValue | None, invoke: InvokeFn) -> None:
        self._history: list[CallResult] = list(resume_value.calls) if resume_value else []
        self._invoke = invoke
        self._position = 0

    @property
    def replayed(self) -> int:
        """Number of call sites answered from history so far."""
        return min(self._position, len(self._history))

    def call(self, capability_name: str, method: str, args: Any = None) -> Any:
        position = self._position
        self._position += 1
        if position >= len(self._history):
            return self._invoke(capability_name, method, args)

        recorded = self._history[position]
        if (recorded.capability_name, recorded.method) != (capability_name, method):
            raise ReplayMismatchError(
                f"Call #{position + 1} asked for {capability_name}.{method} but "
                f"{recorded.capability_name}.{recorded.method} is on record"
            )
        if recorded.error is not None:
            raise CapabilityError.from_info(recorded.error)
        return recorded.result
