"""Task Executor: run a task body for one pass and persist what happened.

A pass ends in exactly one of three ways:
- the body returns -> Completed, root Stack Run and Task Run completed;
- the body raises -> Failed, both marked failed with the error;
- the body calls `invoke` -> Suspended, root waits on one new child.

Suspension unwinds the body with a private BaseException subclass so that
ordinary `except Exception` blocks in task logic do not intercept it. The call
recorded by `invoke` is authoritative: a body that swallows the signal, or
raises after it, still ends the pass Suspended.
"""

from __future__ import annotations

import logging
from typing import Any

from taskchain_runtime.bodies import TaskBody
from taskchain_runtime.errors import (
    BodyError,
    StateConflictError,
    StoreError,
    TaskchainRuntimeError,
)
from taskchain_runtime.models import (
    ROOT_OPERATION,
    ErrorInfo,
    HostCall,
    ResumeValue,
    StackRun,
    TaskRun,
)
from taskchain_runtime.outcome import (
    CallDescriptor,
    Completed,
    ExecutionOutcome,
    Failed,
    Suspended,
)
from taskchain_runtime.state import (
    check_child_parent,
    check_stack_run_transition,
    check_task_run_transition,
    find_root,
)
from taskchain_runtime.storage.base import RunStore, utc_now

logger = logging.getLogger(__name__)


class _SuspendExecution(BaseException):
    """Unwinds a body after `invoke` recorded a host call."""


class _Invocation:
    """Per-pass state behind the `invoke` callable handed to the body."""

    def __init__(self, store: RunStore, task_run: TaskRun, root: StackRun) -> None:
        self.store = store
        self.task_run = task_run
        self.root = root
        self.call: CallDescriptor | None = None
        self.fatal_error: StoreError | StateConflictError | None = None

    def invoke(self, capability_name: str, method: str, args: Any = None) -> Any:
        # One child per pass. Later calls in the same pass just unwind again.
        if self.call is not None:
            raise _SuspendExecution(self.call.stack_run_id)

        host_call = HostCall(capability_name=capability_name, method=method, args=args)
        try:
            check_child_parent(self.root, self.task_run.id)
            self._suspend_root()
        except (StoreError, StateConflictError) as exc:
            self.fatal_error = exc
            raise
        try:
            child = self.store.create_stack_run(
                task_run_id=self.task_run.id,
                operation=host_call.operation,
                parent_stack_run_id=self.root.id,
                status="pending",
                input=host_call.model_dump(mode="json"),
            )
        except (StoreError, StateConflictError) as exc:
            self.fatal_error = exc
            self._restore_root()
            raise

        self.call = CallDescriptor(
            task_run_id=self.task_run.id,
            stack_run_id=child.id,
            capability_name=host_call.capability_name,
            method=host_call.method,
            args=host_call.args,
        )
        logger.info(
            "task_run event=suspended task_run_id=%s stack_run_id=%s child_id=%s operation=%s",
            self.task_run.id,
            self.root.id,
            child.id,
            host_call.operation,
        )
        raise _SuspendExecution(child.id)

    def _suspend_root(self) -> None:
        # The root waits before its child exists, so a dispatcher that settles
        # the child quickly always finds the parent ready for its payload.
        check_stack_run_transition(self.root, "waiting_on_child")
        waiting = self.store.transition_stack_run(
            self.root.id,
            expected_status="running",
            patch={"status": "waiting_on_child", "suspended_at": utc_now()},
        )
        if waiting is None:
            raise StateConflictError(f"Root stack run {self.root.id} is no longer running")
        self.root = waiting

    def _restore_root(self) -> None:
        # A waiting root without a child would never be resumed.
        try:
            running = self.store.transition_stack_run(
                self.root.id,
                expected_status="waiting_on_child",
                patch={"status": "running", "suspended_at": None},
            )
        except StoreError as exc:
            logger.warning(
                "task_run event=restore_root_failed task_run_id=%s root_id=%s error=%r",
                self.task_run.id,
                self.root.id,
                exc,
            )
            return
        if running is not None:
            self.root = running


class TaskExecutor:
    def __init__(self, store: RunStore) -> None:
        self.store = store

    def execute(self, task_run: TaskRun, body: TaskBody) -> ExecutionOutcome:
        """Start a pending Task Run: create its root Stack Run and run the body once."""
        current = self._reload(task_run)
        check_task_run_transition(current, "running")
        existing = self.store.query_stack_runs(
            {"task_run_id": current.id, "parent_stack_run_id": None}
        )
        if existing:
            raise StateConflictError(f"Task run {current.id} already has a root stack run")

        root = self.store.create_stack_run(
            task_run_id=current.id,
            operation=ROOT_OPERATION,
            status="running",
            input=current.input,
        )
        current = self.store.update_task_run(current.id, {"status": "running"})
        logger.info(
            "task_run event=start task_run_id=%s task_identifier=%s root_id=%s",
            current.id,
            current.task_identifier,
            root.id,
        )
        return self._run_pass(current, root, body, None)

    def resume(
        self, task_run: TaskRun, resume_value: ResumeValue | Any, body: TaskBody
    ) -> ExecutionOutcome:
        """Re-run the body of a suspended Task Run with the settled child's value."""
        if not isinstance(resume_value, ResumeValue):
            resume_value = ResumeValue(result=resume_value)
        current = self._reload(task_run)
        if current.status != "running":
            raise StateConflictError(
                f"Task run {current.id} is '{current.status}', only running task runs resume"
            )
        root = self._root_of(current)
        claimed = self.store.transition_stack_run(
            root.id,
            expected_status="waiting_on_child",
            patch={"status": "running"},
        )
        if claimed is None:
            raise StateConflictError(
                f"Root stack run {root.id} is not waiting_on_child; it was resumed elsewhere"
            )
        logger.info(
            "task_run event=resume task_run_id=%s root_id=%s replayed_calls=%d ok=%s",
            current.id,
            claimed.id,
            len(resume_value.calls),
            resume_value.ok,
        )
        return self._run_pass(current, claimed, body, resume_value)

    def fail(self, task_run: TaskRun, error: ErrorInfo) -> Failed:
        """Fail a Task Run whose body cannot run at all, e.g. it was unregistered."""
        current = self._reload(task_run)
        roots = self.store.query_stack_runs({"task_run_id": current.id, "parent_stack_run_id": None})
        for root in roots:
            if not root.is_terminal:
                self.store.update_stack_run(root.id, {"status": "failed", "error": error})
        if not current.is_terminal:
            self.store.update_task_run(current.id, {"status": "failed", "error": error})
        logger.warning(
            "task_run event=failed task_run_id=%s error_type=%s message=%s",
            current.id,
            error.type,
            error.message,
        )
        return Failed(error=error)

    def _run_pass(
        self,
        task_run: TaskRun,
        root: StackRun,
        body: TaskBody,
        resume_value: ResumeValue | None,
    ) -> ExecutionOutcome:
        invocation = _Invocation(self.store, task_run, root)
        body_error: Exception | None = None
        result: Any = None
        try:
            result = body.run(resume_value, invocation.invoke, task_run.input)
        except _SuspendExecution:
            pass
        except Exception as exc:  # noqa: BLE001
            body_error = exc

        # Store failures inside invoke are fatal even if the body caught them.
        if invocation.fatal_error is not None:
            raise invocation.fatal_error
        if invocation.call is not None:
            if body_error is not None:
                logger.debug(
                    "task_run event=error_after_suspend task_run_id=%s error=%r",
                    task_run.id,
                    body_error,
                )
            return Suspended(call=invocation.call)
        if body_error is not None:
            if isinstance(body_error, StoreError):
                raise body_error
            return self._finish_failed(task_run, invocation.root, body_error)
        return self._finish_completed(task_run, invocation.root, result)

    def _finish_completed(self, task_run: TaskRun, root: StackRun, result: Any) -> Completed:
        # Root first: a completed Task Run always has a completed tree.
        self.store.update_stack_run(root.id, {"status": "completed", "result": result})
        self.store.update_task_run(task_run.id, {"status": "completed", "result": result})
        logger.info("task_run event=completed task_run_id=%s root_id=%s", task_run.id, root.id)
        return Completed(result=result)

    def _finish_failed(self, task_run: TaskRun, root: StackRun, exc: Exception) -> Failed:
        # Runtime errors a body re-raises (e.g. CapabilityError) keep their own type.
        if not isinstance(exc, TaskchainRuntimeError):
            exc = BodyError.wrap(exc)
        error = ErrorInfo.from_exception(exc, include_trace=True)
        self.store.update_stack_run(root.id, {"status": "failed", "error": error})
        self.store.update_task_run(task_run.id, {"status": "failed", "error": error})
        logger.warning(
            "task_run event=failed task_run_id=%s root_id=%s error_type=%s message=%s",
            task_run.id,
            root.id,
            error.type,
            error.message,
        )
        return Failed(error=error)

    def _reload(self, task_run: TaskRun) -> TaskRun:
        current = self.store.get_task_run(task_run.id)
        if current is None:
            raise StateConflictError(f"Task run {task_run.id} does not exist")
        return current

    def _root_of(self, task_run: TaskRun) -> StackRun:
        root = find_root(self.store.query_stack_runs({"task_run_id": task_run.id}))
        if root is None:
            raise StateConflictError(f"Task run {task_run.id} has no root stack run")
        return root
