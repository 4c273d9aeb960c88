"""Wiring of store, capability client, executor, and dispatcher behind one object."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from taskchain_runtime.bodies import BodyFn, BodyLoader, TaskBody, TaskBodyRegistry
from taskchain_runtime.capabilities.base import HostCapabilityClient
from taskchain_runtime.capabilities.factory import build_capability_client
from taskchain_runtime.config.settings import Settings
from taskchain_runtime.dispatcher import DispatchReport, StackDispatcher
from taskchain_runtime.errors import StateConflictError, TaskFunctionNotFoundError
from taskchain_runtime.executor import TaskExecutor
from taskchain_runtime.models import StackRun, TaskFunction, TaskRun
from taskchain_runtime.outcome import ExecutionOutcome
from taskchain_runtime.state import call_tree_problems
from taskchain_runtime.storage.base import RunStore
from taskchain_runtime.storage.factory import build_run_store

logger = logging.getLogger(__name__)


class TaskRuntime:
    def __init__(
        self,
        store: RunStore,
        capability_client: HostCapabilityClient,
        *,
        registry: TaskBodyRegistry | None = None,
    ) -> None:
        self.store = store
        self.capability_client = capability_client
        self.registry = registry or TaskBodyRegistry()
        self.loader = BodyLoader(self.registry)
        self.executor = TaskExecutor(store)
        self.dispatcher = StackDispatcher(store, capability_client, self.executor, self.loader)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, registry: TaskBodyRegistry | None = None
    ) -> TaskRuntime:
        store = build_run_store(settings)
        client = build_capability_client(settings, store)
        logger.info(
            "runtime event=configured store_backend=%s capability_mode=%s",
            settings.store_backend,
            settings.capability_mode,
        )
        return cls(store, client, registry=registry)

    def register_function(
        self,
        identifier: str,
        body: TaskBody | BodyFn | None = None,
        *,
        code: str = "",
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskFunction:
        """Store a Task Function; an in-process `body` takes precedence over `code`."""
        if body is not None:
            self.registry.register(identifier, body)
        return self.store.put_task_function(identifier, code, metadata)

    def submit(self, task_identifier: str, input: Any = None) -> TaskRun:
        if self.store.get_task_function(task_identifier) is None:
            raise TaskFunctionNotFoundError(task_identifier)
        task_run = self.store.create_task_run(task_identifier=task_identifier, input=input)
        logger.info(
            "task_run event=submitted task_run_id=%s task_identifier=%s",
            task_run.id,
            task_identifier,
        )
        return task_run

    def start(self, task_run_id: str) -> ExecutionOutcome:
        task_run = self.store.get_task_run(task_run_id)
        if task_run is None:
            raise StateConflictError(f"Task run {task_run_id} does not exist")
        task_function = self.store.get_task_function(task_run.task_identifier)
        if task_function is None:
            raise TaskFunctionNotFoundError(task_run.task_identifier)
        body = self.loader.load(task_function)
        return self.executor.execute(task_run, body)

    def run(self, task_identifier: str, input: Any = None) -> tuple[TaskRun, ExecutionOutcome]:
        """Submit and start in one step."""
        task_run = self.submit(task_identifier, input)
        return task_run, self.start(task_run.id)

    def dispatch_once(self) -> DispatchReport:
        return self.dispatcher.dispatch_once()

    def drain(self, max_passes: int = 100) -> list[DispatchReport]:
        """Run dispatch passes until nothing is pending or `max_passes` is reached."""
        reports: list[DispatchReport] = []
        for _ in range(max_passes):
            if not self.store.list_pending_stack_runs():
                break
            reports.append(self.dispatch_once())
        return reports

    def get_task_run(self, task_run_id: str) -> TaskRun | None:
        return self.store.get_task_run(task_run_id)

    def call_tree(self, task_run_id: str) -> list[StackRun]:
        """All Stack Runs of a Task Run, root first, in creation order."""
        stack_runs = self.store.query_stack_runs({"task_run_id": task_run_id})
        return sorted(stack_runs, key=lambda stack_run: (not stack_run.is_root, stack_run.created_at))

    def call_tree_problems(self, task_run_id: str) -> list[str]:
        return call_tree_problems(task_run_id, self.call_tree(task_run_id))

    def close(self) -> None:
        self.store.close()
