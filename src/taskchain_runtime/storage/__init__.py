"""Run Store backends."""

from taskchain_runtime.storage.base import RunStore
from taskchain_runtime.storage.factory import build_run_store
from taskchain_runtime.storage.memory import InMemoryRunStore
from taskchain_runtime.storage.postgres import PostgresRunStore
from taskchain_runtime.storage.sqlite import SqliteRunStore

__all__ = [
    "InMemoryRunStore",
    "PostgresRunStore",
    "RunStore",
    "SqliteRunStore",
    "build_run_store",
]
