from __future__ import annotations

from pathlib import Path

import pytest

from taskchain_runtime.capabilities import (
    HttpCapabilityClient,
    LocalCapabilityClient,
    build_capability_client,
)
from taskchain_runtime.config.settings import Settings
from taskchain_runtime.runtime import TaskRuntime
from taskchain_runtime.storage import InMemoryRunStore, SqliteRunStore, build_run_store
from taskchain_runtime.storage import factory as storage_factory


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKCHAIN_RUNTIME_STORE_BACKEND", "memory")
    monkeypatch.setenv("TASKCHAIN_RUNTIME_CAPABILITY_MODE", "http")
    monkeypatch.setenv("TASKCHAIN_RUNTIME_CAPABILITY_MAX_RETRIES", "2")

    settings = Settings(_env_file=None)

    assert settings.store_backend == "memory"
    assert settings.capability_mode == "http"
    assert settings.capability_max_retries == 2


def test_settings_fallback_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKCHAIN_RUNTIME_DATABASE_URL", raising=False)
    monkeypatch.delenv("TASKCHAIN_RUNTIME_CAPABILITY_AUTH_TOKEN", raising=False)
    monkeypatch.setenv("TASKCHAIN_DATABASE_URL", "postgresql://u:p@localhost:5432/runs")
    monkeypatch.setenv("TASKCHAIN_SERVICE_TOKEN", "svc-token")

    settings = Settings(_env_file=None)

    assert settings.resolved_database_url() == "postgresql://u:p@localhost:5432/runs"
    assert settings.resolved_auth_token() == "svc-token"
    explicit = Settings(_env_file=None, database_url="postgresql://explicit/db")
    assert explicit.resolved_database_url() == "postgresql://explicit/db"


def test_settings_reject_unknown_backend() -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, store_backend="redis")


def test_build_run_store_backends(tmp_path: Path) -> None:
    memory = build_run_store(Settings(_env_file=None, store_backend="memory"))
    assert isinstance(memory, InMemoryRunStore)

    sqlite = build_run_store(
        Settings(_env_file=None, store_backend="sqlite", sqlite_path=str(tmp_path / "db" / "runs.db"))
    )
    try:
        assert isinstance(sqlite, SqliteRunStore)
        assert (tmp_path / "db" / "runs.db").exists()
    finally:
        sqlite.close()


def test_build_run_store_postgres_requires_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKCHAIN_DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="Missing database URL"):
        build_run_store(Settings(_env_file=None, store_backend="postgres", database_url=""))


def test_build_run_store_postgres_migrates(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakePostgresRunStore:
        def __init__(self, database_url: str) -> None:
            self.database_url = database_url
            self.migrated = False

        def migrate(self) -> None:
            self.migrated = True

    monkeypatch.setattr(storage_factory, "PostgresRunStore", FakePostgresRunStore)

    store = build_run_store(
        Settings(_env_file=None, store_backend="postgres", database_url="postgresql://x/y")
    )

    assert isinstance(store, FakePostgresRunStore)
    assert store.database_url == "postgresql://x/y"
    assert store.migrated is True


def test_build_capability_client_modes() -> None:
    store = InMemoryRunStore()
    local = build_capability_client(Settings(_env_file=None, capability_mode="local"), store)
    assert isinstance(local, LocalCapabilityClient)
    assert "keystore.get" in local.capabilities()

    remote = build_capability_client(
        Settings(
            _env_file=None,
            capability_mode="http",
            capability_base_url="https://edge.example",
            capability_auth_token="t0k",
            capability_max_retries=2,
        ),
        store,
    )
    assert isinstance(remote, HttpCapabilityClient)
    assert remote.url_for("database") == "https://edge.example/functions/v1/wrappedsupabase"
    assert remote.auth_token == "t0k"
    assert remote.max_retries == 2


def test_runtime_from_settings(test_settings: Settings) -> None:
    runtime = TaskRuntime.from_settings(test_settings)
    runtime.register_function("noop", lambda resume_value, invoke, task_input: "ok")

    _, outcome = runtime.run("noop")

    assert outcome.kind == "completed"
    assert isinstance(runtime.store, InMemoryRunStore)
