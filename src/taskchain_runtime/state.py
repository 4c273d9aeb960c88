"""Allowed status transitions and call-tree checks."""

from __future__ import annotations

from collections.abc import Iterable

from taskchain_runtime.errors import StateConflictError
from taskchain_runtime.models import ROOT_OPERATION, StackRun, TaskRun

# current status -> statuses it may move to. Anything missing is illegal.
TASK_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

STACK_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed", "waiting_on_child"}),
    # A waiting parent gets its resume payload recorded, then is claimed for resume.
    "waiting_on_child": frozenset({"waiting_on_child", "running", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def check_task_run_transition(task_run: TaskRun, target: str) -> None:
    allowed = TASK_RUN_TRANSITIONS.get(task_run.status, frozenset())
    if target not in allowed:
        raise StateConflictError(
            f"Task run {task_run.id} cannot move from '{task_run.status}' to '{target}'"
        )


def check_stack_run_transition(stack_run: StackRun, target: str) -> None:
    allowed = STACK_RUN_TRANSITIONS.get(stack_run.status, frozenset())
    if target not in allowed:
        raise StateConflictError(
            f"Stack run {stack_run.id} cannot move from '{stack_run.status}' to '{target}'"
        )


def check_child_parent(parent: StackRun, task_run_id: str) -> None:
    """A child may only hang off a Stack Run of the same Task Run."""
    if parent.task_run_id != task_run_id:
        raise StateConflictError(
            f"Stack run {parent.id} belongs to task run {parent.task_run_id}, not {task_run_id}"
        )


def find_root(stack_runs: Iterable[StackRun]) -> StackRun | None:
    for stack_run in stack_runs:
        if stack_run.is_root:
            return stack_run
    return None


def call_tree_problems(task_run_id: str, stack_runs: list[StackRun]) -> list[str]:
    """Return human-readable integrity violations for one Task Run's call tree."""
    problems: list[str] = []
    by_id = {stack_run.id: stack_run for stack_run in stack_runs}
    roots = [stack_run for stack_run in stack_runs if stack_run.is_root]
    if len(roots) > 1:
        problems.append(f"task run {task_run_id} has {len(roots)} root stack runs")
    for root in roots:
        if root.operation != ROOT_OPERATION:
            problems.append(f"root stack run {root.id} has operation '{root.operation}'")

    running = [stack_run.id for stack_run in stack_runs if stack_run.status == "running"]
    if len(running) > 1:
        problems.append(f"task run {task_run_id} has several running stack runs: {running}")

    for stack_run in stack_runs:
        if stack_run.task_run_id != task_run_id:
            problems.append(f"stack run {stack_run.id} belongs to task run {stack_run.task_run_id}")
        if stack_run.is_root:
            continue
        parent = by_id.get(stack_run.parent_stack_run_id or "")
        if parent is None:
            problems.append(
                f"stack run {stack_run.id} points at unknown parent {stack_run.parent_stack_run_id}"
            )
        elif parent.task_run_id != stack_run.task_run_id:
            problems.append(f"stack run {stack_run.id} has a parent from another task run")

    for parent in stack_runs:
        if parent.status != "waiting_on_child":
            continue
        open_children = [
            child
            for child in stack_runs
            if child.parent_stack_run_id == parent.id and child.status in {"pending", "running"}
        ]
        settled_children = [
            child
            for child in stack_runs
            if child.parent_stack_run_id == parent.id and child.is_terminal
        ]
        # Waiting either for the open call or for the resume that follows a settled one.
        if len(open_children) > 1 or (not open_children and not settled_children):
            problems.append(
                f"stack run {parent.id} is waiting_on_child with "
                f"{len(open_children)} incomplete children"
            )
    return problems
