"""HTTP surface for submitting, starting, and inspecting task runs."""

from taskchain_runtime.api.main import create_app

__all__ = ["create_app"]
