"""FastAPI application wiring for the task runtime.

Terms used in this file:
- app.state.runtime: the shared TaskRuntime (store, executor, dispatcher).
- Dispatch: one pass over the pending host calls, normally driven by the worker.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from taskchain_runtime.config.logsetup import configure_logging
from taskchain_runtime.config.settings import Settings, get_settings
from taskchain_runtime.errors import (
    BodyLoadError,
    StateConflictError,
    StoreError,
    TaskFunctionNotFoundError,
)
from taskchain_runtime.models import (
    CreateTaskRunRequest,
    PutTaskFunctionRequest,
    PutValueRequest,
    StackRun,
    TaskFunction,
    TaskRun,
)
from taskchain_runtime.outcome import outcome_to_dict
from taskchain_runtime.runtime import TaskRuntime

logger = logging.getLogger(__name__)


def _ensure_runtime(app: FastAPI, *, settings: Settings, runtime_override: TaskRuntime | None) -> None:
    if not hasattr(app.state, "runtime"):
        app.state.runtime = runtime_override or TaskRuntime.from_settings(settings)
    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    runtime: TaskRuntime | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory. Tests pass a prepared `runtime`; otherwise settings decide."""
    settings = settings_override or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime(app, settings=settings, runtime_override=runtime)
        yield
        if runtime is None:
            app.state.runtime.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if runtime is not None:
        _ensure_runtime(app, settings=settings, runtime_override=runtime)

    def _runtime(request: Request) -> TaskRuntime:
        if not hasattr(request.app.state, "runtime"):
            _ensure_runtime(request.app, settings=settings, runtime_override=runtime)
        return request.app.state.runtime

    @app.exception_handler(StoreError)
    async def store_error_handler(_: Request, exc: StoreError) -> JSONResponse:
        logger.error("api event=store_error detail=%s", exc)
        return JSONResponse(status_code=503, content={"detail": f"Run store unavailable: {exc}"})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.put("/task-functions/{identifier}", response_model=TaskFunction)
    def put_task_function(
        identifier: str, payload: PutTaskFunctionRequest, request: Request
    ) -> TaskFunction:
        return _runtime(request).register_function(
            identifier, code=payload.code, metadata=payload.metadata
        )

    @app.get("/task-functions/{identifier}", response_model=TaskFunction)
    def get_task_function(identifier: str, request: Request) -> TaskFunction:
        task_function = _runtime(request).store.get_task_function(identifier)
        if task_function is None:
            raise HTTPException(status_code=404, detail="Task function not found")
        return task_function

    @app.post("/task-runs", response_model=TaskRun, status_code=201)
    def create_task_run(payload: CreateTaskRunRequest, request: Request) -> TaskRun:
        try:
            return _runtime(request).submit(payload.task_identifier, payload.input)
        except TaskFunctionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/task-runs/{task_run_id}", response_model=TaskRun)
    def get_task_run(task_run_id: str, request: Request) -> TaskRun:
        task_run = _runtime(request).get_task_run(task_run_id)
        if task_run is None:
            raise HTTPException(status_code=404, detail="Task run not found")
        return task_run

    @app.post("/task-runs/{task_run_id}/start")
    def start_task_run(task_run_id: str, request: Request) -> dict[str, Any]:
        runtime_ = _runtime(request)
        if runtime_.get_task_run(task_run_id) is None:
            raise HTTPException(status_code=404, detail="Task run not found")
        try:
            outcome = runtime_.start(task_run_id)
        except TaskFunctionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except BodyLoadError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except StateConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "task_run": runtime_.get_task_run(task_run_id).model_dump(mode="json"),
            "outcome": outcome_to_dict(outcome),
        }

    @app.get("/task-runs/{task_run_id}/stack-runs", response_model=list[StackRun])
    def list_stack_runs(task_run_id: str, request: Request) -> list[StackRun]:
        runtime_ = _runtime(request)
        if runtime_.get_task_run(task_run_id) is None:
            raise HTTPException(status_code=404, detail="Task run not found")
        return runtime_.call_tree(task_run_id)

    @app.post("/dispatch")
    def dispatch(request: Request) -> dict[str, Any]:
        report = _runtime(request).dispatch_once()
        return report.to_dict()

    @app.put("/keystore/{key}")
    def put_value(key: str, payload: PutValueRequest, request: Request) -> dict[str, Any]:
        entry = _runtime(request).store.put_value(key, payload.value)
        return entry.model_dump(mode="json")

    @app.get("/keystore/{key}")
    def get_value(key: str, request: Request) -> dict[str, Any]:
        value = _runtime(request).store.get_value(key)
        if value is None:
            raise HTTPException(status_code=404, detail="Key not found")
        return {"key": key, "value": value}

    @app.delete("/keystore/{key}")
    def delete_value(key: str, request: Request) -> dict[str, Any]:
        if not _runtime(request).store.delete_value(key):
            raise HTTPException(status_code=404, detail="Key not found")
        return {"key": key, "deleted": True}

    return app


def build_default_app() -> FastAPI:
    """Factory target for `uvicorn --factory taskchain_runtime.api.main:build_default_app`."""
    return create_app()
