from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from taskchain_runtime.errors import CapabilityError, StateConflictError
from taskchain_runtime.models import (
    ROOT_OPERATION,
    CallResult,
    ErrorInfo,
    HostCall,
    ResumeValue,
    StackRun,
    TaskRun,
)
from taskchain_runtime.state import (
    call_tree_problems,
    check_child_parent,
    check_stack_run_transition,
    check_task_run_transition,
    find_root,
)

NOW = datetime(2024, 1, 1, tzinfo=UTC)


def _stack_run(**overrides: object) -> StackRun:
    payload: dict[str, object] = {
        "id": "root",
        "task_run_id": "tr-1",
        "parent_stack_run_id": None,
        "operation": ROOT_OPERATION,
        "status": "running",
        "created_at": NOW,
        "updated_at": NOW,
    }
    payload.update(overrides)
    return StackRun.model_validate(payload)


def _task_run(status: str) -> TaskRun:
    return TaskRun(
        id="tr-1", task_identifier="demo", status=status, created_at=NOW, updated_at=NOW
    )


def test_host_call_operation_and_validation() -> None:
    call = HostCall(capability_name="keystore", method="get", args={"key": "a"})
    assert call.operation == "keystore.get"

    with pytest.raises(ValidationError):
        HostCall(capability_name="", method="get")


def test_error_info_keeps_capability_details() -> None:
    exc = CapabilityError("boom", capability_name="database", method="select", status_code=502)
    info = ErrorInfo.from_exception(exc)

    assert info.type == "CapabilityError"
    assert info.message == "boom"
    assert info.details == {"capability_name": "database", "method": "select", "status_code": 502}


def test_error_info_trace_is_optional() -> None:
    try:
        raise ValueError("bad input")
    except ValueError as exc:
        with_trace = ErrorInfo.from_exception(exc, include_trace=True)
        without_trace = ErrorInfo.from_exception(exc)

    assert "traceback" in with_trace.details
    assert "ValueError: bad input" in with_trace.details["traceback"]
    assert without_trace.details == {}


def test_resume_value_following_accumulates_history() -> None:
    first = CallResult(stack_run_id="c1", capability_name="math", method="add", result=3)
    second = CallResult(
        stack_run_id="c2",
        capability_name="flaky",
        method="explode",
        error=ErrorInfo(type="CapabilityError", message="nope"),
    )

    value = ResumeValue.following(None, first)
    assert value.result == 3
    assert value.ok is True

    value = ResumeValue.following(value, second)
    assert value.ok is False
    assert [call.stack_run_id for call in value.calls] == ["c1", "c2"]
    with pytest.raises(CapabilityError, match="nope"):
        value.unwrap()


def test_stack_run_host_call_rejects_malformed_input() -> None:
    child = _stack_run(id="c1", parent_stack_run_id="root", operation="x.y", input={"bogus": 1})
    with pytest.raises(ValidationError):
        child.host_call()


def test_task_run_transitions() -> None:
    check_task_run_transition(_task_run("pending"), "running")
    check_task_run_transition(_task_run("running"), "completed")

    with pytest.raises(StateConflictError):
        check_task_run_transition(_task_run("completed"), "running")
    with pytest.raises(StateConflictError):
        check_task_run_transition(_task_run("pending"), "completed")


def test_stack_run_transitions() -> None:
    check_stack_run_transition(_stack_run(status="pending"), "running")
    check_stack_run_transition(_stack_run(status="running"), "waiting_on_child")
    check_stack_run_transition(_stack_run(status="waiting_on_child"), "running")

    with pytest.raises(StateConflictError):
        check_stack_run_transition(_stack_run(status="pending"), "completed")
    with pytest.raises(StateConflictError):
        check_stack_run_transition(_stack_run(status="failed"), "running")


def test_child_parent_must_share_task_run() -> None:
    parent = _stack_run(task_run_id="tr-1")
    check_child_parent(parent, "tr-1")
    with pytest.raises(StateConflictError):
        check_child_parent(parent, "tr-2")


def test_call_tree_problems_on_healthy_tree() -> None:
    root = _stack_run(status="waiting_on_child")
    child = _stack_run(id="c1", parent_stack_run_id="root", operation="echo.say", status="pending")

    assert find_root([child, root]) is root
    assert call_tree_problems("tr-1", [root, child]) == []


def test_call_tree_problems_reports_violations() -> None:
    root = _stack_run(status="waiting_on_child")
    stray = _stack_run(id="c1", parent_stack_run_id="missing", operation="echo.say")
    second_root = _stack_run(id="root-2", operation="echo.say", status="running")

    problems = call_tree_problems("tr-1", [root, stray, second_root])

    assert any("2 root stack runs" in problem for problem in problems)
    assert any("unknown parent" in problem for problem in problems)
    assert any("several running" in problem for problem in problems)
    assert any("0 incomplete children" in problem for problem in problems)
