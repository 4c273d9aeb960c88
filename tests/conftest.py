from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from taskchain_runtime.api.main import create_app
from taskchain_runtime.capabilities import LocalCapabilityClient, register_keystore
from taskchain_runtime.config.settings import Settings
from taskchain_runtime.errors import CapabilityError
from taskchain_runtime.runtime import TaskRuntime
from taskchain_runtime.storage import InMemoryRunStore, SqliteRunStore
from taskchain_runtime.storage.base import RunStore


def build_capabilities(store: RunStore) -> LocalCapabilityClient:
    """Keystore plus a few deterministic test capabilities."""
    client = LocalCapabilityClient()
    register_keystore(client, store)

    def echo(args: Any) -> Any:
        return args

    def add(args: dict[str, int]) -> int:
        return int(args["a"]) + int(args["b"])

    def explode(args: Any) -> Any:
        raise CapabilityError("upstream said no", capability_name="flaky", method="explode")

    client.register("echo", "say", echo)
    client.register("math", "add", add)
    client.register("flaky", "explode", explode)
    return client


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[RunStore]:
    if request.param == "memory":
        backend: RunStore = InMemoryRunStore()
    else:
        backend = SqliteRunStore(tmp_path / "runs.db")
    yield backend
    backend.close()


@pytest.fixture
def capabilities(store: InMemoryRunStore) -> LocalCapabilityClient:
    return build_capabilities(store)


@pytest.fixture
def runtime(store: InMemoryRunStore, capabilities: LocalCapabilityClient) -> TaskRuntime:
    return TaskRuntime(store, capabilities)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        app_name="taskchain-runtime-test",
        store_backend="memory",
        capability_mode="local",
        log_level="WARNING",
    )


@pytest.fixture
def client(runtime: TaskRuntime, test_settings: Settings) -> Iterator[TestClient]:
    app = create_app(runtime=runtime, settings_override=test_settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_capabilities():
    return build_capabilities
