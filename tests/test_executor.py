from __future__ import annotations

from typing import Any

import pytest

from taskchain_runtime.bodies import FunctionBody
from taskchain_runtime.errors import StateConflictError, StoreError
from taskchain_runtime.executor import TaskExecutor
from taskchain_runtime.models import ROOT_OPERATION, ErrorInfo, ResumeValue
from taskchain_runtime.outcome import Completed, Failed, Suspended
from taskchain_runtime.state import call_tree_problems
from taskchain_runtime.storage import InMemoryRunStore


def _start(store: InMemoryRunStore, fn, task_input: Any = None):
    task_run = store.create_task_run(task_identifier="demo", input=task_input)
    outcome = TaskExecutor(store).execute(task_run, FunctionBody(fn))
    return task_run, outcome


def _root(store: InMemoryRunStore, task_run_id: str):
    (root,) = store.query_stack_runs({"task_run_id": task_run_id, "parent_stack_run_id": None})
    return root


def test_body_without_host_call_completes(store: InMemoryRunStore) -> None:
    task_run, outcome = _start(store, lambda resume_value, invoke, task_input: "done")

    assert outcome == Completed(result="done")
    root = _root(store, task_run.id)
    assert root.operation == ROOT_OPERATION
    assert root.status == "completed"
    assert root.result == "done"
    finished = store.get_task_run(task_run.id)
    assert finished.status == "completed"
    assert finished.result == "done"
    assert finished.error is None


def test_body_receives_task_input_and_no_resume_value(store: InMemoryRunStore) -> None:
    seen: list[tuple[Any, Any]] = []

    def body(resume_value, invoke, task_input):
        seen.append((resume_value, task_input))
        return task_input["n"] * 2

    _, outcome = _start(store, body, {"n": 21})

    assert seen == [(None, {"n": 21})]
    assert outcome.result == 42


def test_host_call_suspends_with_pending_child(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        return invoke("kv", "get", {"key": "x"})

    task_run, outcome = _start(store, body)

    assert isinstance(outcome, Suspended)
    child = store.get_stack_run(outcome.call.stack_run_id)
    root = _root(store, task_run.id)
    assert child.status == "pending"
    assert child.parent_stack_run_id == root.id
    assert child.operation == "kv.get"
    assert child.input == {"capability_name": "kv", "method": "get", "args": {"key": "x"}}
    assert root.status == "waiting_on_child"
    assert root.suspended_at is not None
    assert store.get_task_run(task_run.id).status == "running"
    assert (outcome.call.capability_name, outcome.call.method) == ("kv", "get")
    assert outcome.call.task_run_id == task_run.id


def test_body_error_fails_task_run(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        raise ValueError("bad things")

    task_run, outcome = _start(store, body)

    assert isinstance(outcome, Failed)
    assert outcome.error.type == "BodyError"
    assert outcome.error.details["exception_type"] == "ValueError"
    assert outcome.error.message == "bad things"
    assert "traceback" in outcome.error.details
    finished = store.get_task_run(task_run.id)
    assert finished.status == "failed"
    assert finished.result is None
    assert _root(store, task_run.id).status == "failed"


def test_swallowed_suspension_still_suspends(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        try:
            invoke("echo", "say", "hi")
        except BaseException:  # noqa: BLE001
            pass
        return "should not complete"

    task_run, outcome = _start(store, body)

    assert isinstance(outcome, Suspended)
    assert store.get_task_run(task_run.id).status == "running"


def test_except_exception_does_not_catch_suspension(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        try:
            return invoke("echo", "say", "hi")
        except Exception:  # noqa: BLE001
            return "caught"

    _, outcome = _start(store, body)
    assert isinstance(outcome, Suspended)


def test_error_after_suspension_is_ignored(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        try:
            invoke("echo", "say", "hi")
        finally:
            raise RuntimeError("cleanup failed")

    task_run, outcome = _start(store, body)

    assert isinstance(outcome, Suspended)
    assert _root(store, task_run.id).status == "waiting_on_child"


def test_only_one_child_per_pass(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        for key in ("a", "b", "c"):
            try:
                invoke("kv", "get", {"key": key})
            except BaseException:  # noqa: BLE001
                continue
        return None

    task_run, outcome = _start(store, body)

    children = store.query_stack_runs({"task_run_id": task_run.id, "operation": "kv.get"})
    assert len(children) == 1
    assert children[0].input["args"] == {"key": "a"}
    assert outcome.call.stack_run_id == children[0].id


def test_invalid_host_call_fails_the_body(store: InMemoryRunStore) -> None:
    task_run, outcome = _start(store, lambda resume_value, invoke, task_input: invoke("", "get", {}))

    assert isinstance(outcome, Failed)
    assert outcome.error.type == "BodyError"
    assert outcome.error.details["exception_type"] == "ValidationError"
    assert store.query_stack_runs({"task_run_id": task_run.id, "status": "pending"}) == []


def test_execute_rejects_started_task_run(store: InMemoryRunStore) -> None:
    task_run, _ = _start(store, lambda resume_value, invoke, task_input: 1)

    with pytest.raises(StateConflictError):
        TaskExecutor(store).execute(task_run, FunctionBody(lambda *args: 2))


def test_resume_runs_body_with_resume_value(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        if resume_value is None:
            return invoke("echo", "say", "hello")
        return resume_value.unwrap()

    task_run, _ = _start(store, body)
    outcome = TaskExecutor(store).resume(task_run, ResumeValue(result="hello"), FunctionBody(body))

    assert outcome == Completed(result="hello")
    assert store.get_task_run(task_run.id).result == "hello"
    roots = store.query_stack_runs({"task_run_id": task_run.id, "parent_stack_run_id": None})
    assert len(roots) == 1


def test_resume_wraps_plain_values(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        if resume_value is None:
            return invoke("echo", "say", 1)
        return resume_value.result + 1

    task_run, _ = _start(store, body)
    assert TaskExecutor(store).resume(task_run, 41, FunctionBody(body)).result == 42


def test_resume_requires_waiting_root(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        if resume_value is None:
            return invoke("echo", "say", 1)
        return "ok"

    task_run, _ = _start(store, body)
    executor = TaskExecutor(store)
    executor.resume(task_run, ResumeValue(result=1), FunctionBody(body))

    with pytest.raises(StateConflictError):
        executor.resume(task_run, ResumeValue(result=1), FunctionBody(body))


def test_resume_without_root_is_a_conflict(store: InMemoryRunStore) -> None:
    task_run = store.create_task_run(task_identifier="demo")
    store.update_task_run(task_run.id, {"status": "running"})

    with pytest.raises(StateConflictError, match="no root"):
        TaskExecutor(store).resume(task_run, ResumeValue(), FunctionBody(lambda *args: None))


def test_fail_marks_waiting_root_and_task_run(store: InMemoryRunStore) -> None:
    task_run, _ = _start(store, lambda resume_value, invoke, task_input: invoke("echo", "say", 1))
    outcome = TaskExecutor(store).fail(task_run, ErrorInfo(type="BodyLoadError", message="gone"))

    assert outcome.error.message == "gone"
    assert store.get_task_run(task_run.id).status == "failed"
    assert _root(store, task_run.id).status == "failed"


class _BrokenChildStore(InMemoryRunStore):
    def create_stack_run(self, **kwargs: Any):
        if kwargs.get("parent_stack_run_id") is not None:
            raise StoreError("disk full")
        return super().create_stack_run(**kwargs)


def test_store_error_during_invoke_propagates_even_if_body_catches() -> None:
    store = _BrokenChildStore()
    task_run = store.create_task_run(task_identifier="demo")

    def body(resume_value, invoke, task_input):
        try:
            invoke("echo", "say", 1)
        except Exception:  # noqa: BLE001
            return "swallowed"
        return None

    with pytest.raises(StoreError, match="disk full"):
        TaskExecutor(store).execute(task_run, FunctionBody(body))


def test_failed_child_insert_leaves_root_running() -> None:
    store = _BrokenChildStore()
    task_run = store.create_task_run(task_identifier="demo")

    with pytest.raises(StoreError, match="disk full"):
        TaskExecutor(store).execute(
            task_run, FunctionBody(lambda resume_value, invoke, task_input: invoke("echo", "say", 1))
        )

    root = _root(store, task_run.id)
    assert root.status == "running"
    assert root.suspended_at is None
    stack_runs = store.query_stack_runs({"task_run_id": task_run.id})
    assert [stack_run.id for stack_run in stack_runs] == [root.id]
    assert call_tree_problems(task_run.id, stack_runs) == []


def test_re_raised_capability_error_keeps_its_type(store: InMemoryRunStore) -> None:
    def body(resume_value, invoke, task_input):
        if resume_value is None:
            return invoke("kv", "get", {"key": "x"})
        return resume_value.unwrap()

    task_run, _ = _start(store, body)
    outcome = TaskExecutor(store).resume(
        task_run, ResumeValue(error=ErrorInfo(type="CapabilityError", message="kv down")), FunctionBody(body)
    )

    assert isinstance(outcome, Failed)
    assert outcome.error.type == "CapabilityError"
    assert "exception_type" not in outcome.error.details
