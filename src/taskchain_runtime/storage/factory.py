"""Build a Run Store from settings."""

from __future__ import annotations

from taskchain_runtime.config.settings import Settings
from taskchain_runtime.storage.base import RunStore
from taskchain_runtime.storage.memory import InMemoryRunStore
from taskchain_runtime.storage.postgres import PostgresRunStore
from taskchain_runtime.storage.sqlite import SqliteRunStore


def build_run_store(settings: Settings) -> RunStore:
    """Create and migrate the configured backend."""
    backend = settings.store_backend
    if backend == "memory":
        return InMemoryRunStore()
    if backend == "sqlite":
        return SqliteRunStore(settings.sqlite_path)
    if backend == "postgres":
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set TASKCHAIN_RUNTIME_DATABASE_URL "
                "or TASKCHAIN_DATABASE_URL for the postgres store backend."
            )
        store = PostgresRunStore(database_url)
        store.migrate()
        return store
    raise ValueError(f"Unknown store backend: {backend}")
