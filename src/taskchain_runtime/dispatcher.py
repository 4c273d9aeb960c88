"""Stack Dispatcher: perform pending host calls and resume the bodies waiting on them."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from taskchain_runtime.bodies import BodyLoader
from taskchain_runtime.capabilities.base import HostCapabilityClient
from taskchain_runtime.errors import (
    BodyLoadError,
    CapabilityError,
    OrphanedChildWarning,
    StoreError,
    TaskFunctionNotFoundError,
)
from taskchain_runtime.executor import TaskExecutor
from taskchain_runtime.models import CallResult, ErrorInfo, ResumeValue, StackRun
from taskchain_runtime.outcome import ExecutionOutcome
from taskchain_runtime.storage.base import RunStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """What one dispatch pass did, by Stack Run id."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    resumed: dict[str, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.completed) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "orphaned": list(self.orphaned),
            "errors": dict(self.errors),
            "resumed": dict(self.resumed),
        }


class StackDispatcher:
    def __init__(
        self,
        store: RunStore,
        capability_client: HostCapabilityClient,
        executor: TaskExecutor | None = None,
        loader: BodyLoader | None = None,
    ) -> None:
        self.store = store
        self.capability_client = capability_client
        self.executor = executor or TaskExecutor(store)
        self.loader = loader or BodyLoader()

    def dispatch_once(self) -> DispatchReport:
        """Process every Stack Run that is pending right now, oldest first.

        A failure while handling one Stack Run is logged and recorded in the
        report; the pass moves on to the next one.
        """
        report = DispatchReport()
        pending = self.store.list_pending_stack_runs()
        logger.info("dispatch event=pass_start pending=%d", len(pending))
        for stack_run in pending:
            try:
                self.process_stack_run(stack_run, report=report)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "dispatch event=stack_run_error stack_run_id=%s task_run_id=%s",
                    stack_run.id,
                    stack_run.task_run_id,
                )
                report.errors[stack_run.id] = f"{type(exc).__name__}: {exc}"
        logger.info(
            "dispatch event=pass_done processed=%d skipped=%d errors=%d",
            report.processed,
            len(report.skipped),
            len(report.errors),
        )
        return report

    def process_stack_run(
        self, stack_run: StackRun, *, report: DispatchReport | None = None
    ) -> StackRun | None:
        """Claim one pending Stack Run, perform its call, settle it, then resume its parent.

        Returns the settled Stack Run, or None when another dispatcher claimed it first.
        """
        report = report if report is not None else DispatchReport()

        # 1) Atomic pending -> running. Losing the race is not an error.
        claimed = self.store.claim_stack_run(stack_run.id)
        if claimed is None:
            logger.info("dispatch event=claim_lost stack_run_id=%s", stack_run.id)
            report.skipped.append(stack_run.id)
            return None

        # 2) Perform the host call recorded on the child.
        patch: dict[str, Any]
        try:
            call = claimed.host_call()
            result = self.capability_client.invoke(call.capability_name, call.method, call.args)
        except StoreError:
            raise
        except (CapabilityError, ValidationError) as exc:
            patch = {"status": "failed", "error": ErrorInfo.from_exception(exc)}
        except Exception as exc:  # noqa: BLE001
            wrapped = CapabilityError(f"Capability client raised {type(exc).__name__}: {exc}")
            patch = {"status": "failed", "error": ErrorInfo.from_exception(wrapped)}
        else:
            patch = {"status": "completed", "result": result}

        # 3) Settle the child.
        settled = self.store.update_stack_run(claimed.id, patch)
        if settled.status == "completed":
            report.completed.append(settled.id)
        else:
            report.failed.append(settled.id)
        logger.info(
            "dispatch event=settled stack_run_id=%s task_run_id=%s operation=%s status=%s",
            settled.id,
            settled.task_run_id,
            settled.operation,
            settled.status,
        )

        # 4) Hand the outcome to the waiting parent.
        if settled.parent_stack_run_id is not None:
            outcome = self.resume_parent(settled, report=report)
            if outcome is not None:
                report.resumed[settled.task_run_id] = outcome.kind
        return settled

    def resume_parent(
        self, child: StackRun, *, report: DispatchReport | None = None
    ) -> ExecutionOutcome | None:
        """Deliver a settled child's result to its parent and re-run the parent's body.

        Returns None when there is nothing to resume: the parent or Task Run
        is gone (orphan), or the parent is no longer waiting.
        """
        parent = self.store.get_stack_run(child.parent_stack_run_id or "")
        task_run = self.store.get_task_run(child.task_run_id)
        if parent is None or task_run is None or parent.task_run_id != child.task_run_id:
            message = (
                f"Stack run {child.id} settled but its parent {child.parent_stack_run_id} "
                f"or task run {child.task_run_id} is missing"
            )
            logger.warning("dispatch event=orphaned_child stack_run_id=%s detail=%s", child.id, message)
            warnings.warn(message, OrphanedChildWarning, stacklevel=2)
            if report is not None:
                report.orphaned.append(child.id)
            return None

        payload = ResumeValue.following(parent.resume_payload, _call_result(child))
        waiting = self.store.transition_stack_run(
            parent.id,
            expected_status="waiting_on_child",
            patch={"status": "waiting_on_child", "resume_payload": payload},
        )
        if waiting is None:
            logger.warning(
                "dispatch event=parent_not_waiting stack_run_id=%s parent_id=%s",
                child.id,
                parent.id,
            )
            return None

        task_function = self.store.get_task_function(task_run.task_identifier)
        if task_function is None:
            missing = TaskFunctionNotFoundError(task_run.task_identifier)
            return self.executor.fail(task_run, ErrorInfo.from_exception(missing))
        try:
            body = self.loader.load(task_function)
        except BodyLoadError as exc:
            return self.executor.fail(task_run, ErrorInfo.from_exception(exc))

        outcome = self.executor.resume(task_run, payload, body)
        logger.info(
            "dispatch event=parent_resumed task_run_id=%s parent_id=%s outcome=%s",
            task_run.id,
            parent.id,
            outcome.kind,
        )
        return outcome


def _call_result(child: StackRun) -> CallResult:
    try:
        call = child.host_call()
        capability_name, method = call.capability_name, call.method
    except ValidationError:
        capability_name, _, method = child.operation.partition(".")
    return CallResult(
        stack_run_id=child.id,
        capability_name=capability_name,
        method=method,
        result=child.result,
        error=child.error,
    )
