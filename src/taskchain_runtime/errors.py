"""Error taxonomy for the suspend/resume runtime."""

from __future__ import annotations

from typing import Any

from taskchain_runtime.models import ErrorInfo


class TaskchainRuntimeError(RuntimeError):
    """Base error for runtime operations."""


class StoreError(TaskchainRuntimeError):
    """Backend unreachable or a constraint was violated. Never retried by the core."""


class StateConflictError(TaskchainRuntimeError):
    """A run was not in the state an operation requires (illegal or lost transition)."""


class TaskFunctionNotFoundError(TaskchainRuntimeError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"Task function '{identifier}' is not registered")
        self.identifier = identifier


class BodyLoadError(TaskchainRuntimeError):
    """A task function could not be resolved to an executable body."""


class CapabilityError(TaskchainRuntimeError):
    """A host capability call failed."""

    def __init__(
        self,
        message: str,
        *,
        capability_name: str | None = None,
        method: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.capability_name = capability_name
        self.method = method
        self.status_code = status_code

    def to_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {}
        if self.capability_name is not None:
            details["capability_name"] = self.capability_name
        if self.method is not None:
            details["method"] = self.method
        if self.status_code is not None:
            details["status_code"] = self.status_code
        return details

    @classmethod
    def from_info(cls, info: ErrorInfo) -> CapabilityError:
        status_code = info.details.get("status_code")
        return cls(
            info.message,
            capability_name=info.details.get("capability_name"),
            method=info.details.get("method"),
            status_code=status_code if isinstance(status_code, int) else None,
        )


class BodyError(TaskchainRuntimeError):
    """Task logic raised outside the suspension path."""

    def __init__(self, message: str, *, exception_type: str | None = None) -> None:
        super().__init__(message)
        self.exception_type = exception_type

    def to_details(self) -> dict[str, Any]:
        if self.exception_type is None:
            return {}
        return {"exception_type": self.exception_type}

    @classmethod
    def wrap(cls, exc: BaseException) -> BodyError:
        error = cls(str(exc), exception_type=type(exc).__name__)
        error.__cause__ = exc
        return error


class ReplayMismatchError(BodyError):
    """A replayed call site asked for a different capability than the one on record."""


class OrphanedChildWarning(UserWarning):
    """A settled child's parent Stack Run or owning Task Run is missing."""
