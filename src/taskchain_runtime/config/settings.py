"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "taskchain-runtime"
    app_env: str = "dev"
    log_level: str = "INFO"
    store_backend: Literal["memory", "sqlite", "postgres"] = "sqlite"
    sqlite_path: str = "data/taskchain.db"
    database_url: str = ""
    capability_mode: Literal["local", "http"] = "local"
    capability_base_url: str = "http://localhost:54321"
    capability_auth_token: str = ""
    capability_timeout_s: float = Field(default=30.0, ge=0.01)
    capability_max_retries: int = Field(default=0, ge=0)
    capability_backoff_s: float = Field(default=0.0, ge=0.0)
    dispatch_interval_s: float = Field(default=5.0, ge=0.05)

    model_config = SettingsConfigDict(
        env_prefix="TASKCHAIN_RUNTIME_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("TASKCHAIN_DATABASE_URL", "")

    def resolved_auth_token(self) -> str:
        return self.capability_auth_token or os.getenv("TASKCHAIN_SERVICE_TOKEN", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
