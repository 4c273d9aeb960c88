"""Build the configured Host Capability Client."""

from __future__ import annotations

from taskchain_runtime.capabilities.base import HostCapabilityClient
from taskchain_runtime.capabilities.http import HttpCapabilityClient
from taskchain_runtime.capabilities.keystore import register_keystore
from taskchain_runtime.capabilities.local import LocalCapabilityClient
from taskchain_runtime.config.settings import Settings
from taskchain_runtime.storage.base import RunStore


def build_capability_client(settings: Settings, store: RunStore) -> HostCapabilityClient:
    if settings.capability_mode == "http":
        return HttpCapabilityClient(
            base_url=settings.capability_base_url,
            auth_token=settings.resolved_auth_token(),
            timeout_s=settings.capability_timeout_s,
            max_retries=settings.capability_max_retries,
            backoff_s=settings.capability_backoff_s,
        )
    client = LocalCapabilityClient(timeout_s=settings.capability_timeout_s)
    register_keystore(client, store)
    return client
