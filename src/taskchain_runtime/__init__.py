"""Resumable task-execution runtime.

Task bodies call host capabilities through `invoke`; each call suspends the
task, persists a pending child Stack Run, and a dispatcher later performs the
call and re-runs the body with the result.
"""

from taskchain_runtime.bodies import BodyLoader, FunctionBody, TaskBody, TaskBodyRegistry
from taskchain_runtime.dispatcher import DispatchReport, StackDispatcher
from taskchain_runtime.errors import (
    BodyError,
    BodyLoadError,
    CapabilityError,
    OrphanedChildWarning,
    ReplayMismatchError,
    StateConflictError,
    StoreError,
    TaskchainRuntimeError,
    TaskFunctionNotFoundError,
)
from taskchain_runtime.executor import TaskExecutor
from taskchain_runtime.models import (
    ROOT_OPERATION,
    CallResult,
    ErrorInfo,
    HostCall,
    ResumeValue,
    StackRun,
    TaskFunction,
    TaskRun,
)
from taskchain_runtime.outcome import CallDescriptor, Completed, ExecutionOutcome, Failed, Suspended
from taskchain_runtime.replay import CallReplay
from taskchain_runtime.runtime import TaskRuntime

__all__ = [
    "ROOT_OPERATION",
    "BodyError",
    "BodyLoadError",
    "BodyLoader",
    "CallDescriptor",
    "CallReplay",
    "CallResult",
    "CapabilityError",
    "Completed",
    "DispatchReport",
    "ErrorInfo",
    "ExecutionOutcome",
    "Failed",
    "FunctionBody",
    "HostCall",
    "OrphanedChildWarning",
    "ReplayMismatchError",
    "ResumeValue",
    "StackDispatcher",
    "StackRun",
    "StateConflictError",
    "StoreError",
    "Suspended",
    "TaskBody",
    "TaskBodyRegistry",
    "TaskExecutor",
    "TaskFunction",
    "TaskFunctionNotFoundError",
    "TaskRun",
    "TaskRuntime",
    "TaskchainRuntimeError",
]
