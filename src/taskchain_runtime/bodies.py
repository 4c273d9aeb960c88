"""Task body boundary: the body interface, an in-process registry, and the loader.

A body is re-run from the start on every resume. It receives the latest
resume value (None on the first run), the bound `invoke` primitive, and the
Task Run input, and must skip host calls that are already satisfied.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from taskchain_runtime.errors import BodyLoadError
from taskchain_runtime.models import ResumeValue, TaskFunction

InvokeFn = Callable[[str, str, Any], Any]
BodyFn = Callable[[ResumeValue | None, InvokeFn, Any], Any]


class TaskBody(Protocol):
    def run(self, resume_value: ResumeValue | None, invoke: InvokeFn, task_input: Any) -> Any: ...


@dataclass(frozen=True)
class FunctionBody:
    """Adapt a plain function with the `run` signature to TaskBody."""

    fn: BodyFn

    def run(self, resume_value: ResumeValue | None, invoke: InvokeFn, task_input: Any) -> Any:
        return self.fn(resume_value, invoke, task_input)


class TaskBodyRegistry:
    """Maps task identifiers to in-process bodies."""

    def __init__(self) -> None:
        self._bodies: dict[str, TaskBody] = {}

    def register(self, identifier: str, body: TaskBody | BodyFn) -> TaskBody:
        resolved = as_task_body(body)
        self._bodies[identifier] = resolved
        return resolved

    def task(self, identifier: str) -> Callable[[BodyFn], BodyFn]:
        """Decorator form of `register` for plain functions."""

        def decorator(fn: BodyFn) -> BodyFn:
            self.register(identifier, fn)
            return fn

        return decorator

    def get(self, identifier: str) -> TaskBody | None:
        return self._bodies.get(identifier)

    def identifiers(self) -> list[str]:
        return sorted(self._bodies)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._bodies


class BodyLoader:
    """Resolve a stored Task Function to an executable body.

    Lookup order: the registry by identifier, then `code` (or
    `metadata["entrypoint"]`) as an importable `package.module:attribute`.
    """

    def __init__(self, registry: TaskBodyRegistry | None = None) -> None:
        self.registry = registry or TaskBodyRegistry()

    def load(self, task_function: TaskFunction) -> TaskBody:
        registered = self.registry.get(task_function.identifier)
        if registered is not None:
            return registered

        entrypoint = str(task_function.metadata.get("entrypoint") or task_function.code).strip()
        if not entrypoint:
            raise BodyLoadError(
                f"Task function '{task_function.identifier}' has no registered body or entrypoint"
            )
        return as_task_body(import_entrypoint(entrypoint))


def import_entrypoint(entrypoint: str) -> Any:
    module_name, sep, attribute_path = entrypoint.partition(":")
    if not sep or not module_name or not attribute_path:
        raise BodyLoadError(f"Entrypoint must look like 'package.module:attribute', got {entrypoint!r}")
    try:
        target: Any = importlib.import_module(module_name)
    except Exception as exc:  # noqa: BLE001
        # Import-time failures of any kind, not only ImportError.
        raise BodyLoadError(
            f"Cannot import module '{module_name}': {type(exc).__name__}: {exc}"
        ) from exc
    for part in attribute_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise BodyLoadError(f"Entrypoint {entrypoint!r} does not resolve: {exc}") from exc
    return target


def as_task_body(candidate: Any) -> TaskBody:
    if isinstance(candidate, type):
        try:
            candidate = candidate()
        except Exception as exc:  # noqa: BLE001
            raise BodyLoadError(
                f"Cannot instantiate body {candidate.__name__}: {type(exc).__name__}: {exc}"
            ) from exc
    if callable(getattr(candidate, "run", None)):
        return candidate
    if callable(candidate):
        return FunctionBody(candidate)
    raise BodyLoadError(f"{candidate!r} is neither a TaskBody nor a callable")
