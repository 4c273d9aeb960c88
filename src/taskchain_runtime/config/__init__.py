"""Settings and logging setup."""

from taskchain_runtime.config.logsetup import configure_logging
from taskchain_runtime.config.settings import Settings, get_settings

__all__ = ["Settings", "configure_logging", "get_settings"]
