"""Host capability clients."""

from taskchain_runtime.capabilities.base import HostCapabilityClient
from taskchain_runtime.capabilities.factory import build_capability_client
from taskchain_runtime.capabilities.http import HttpCapabilityClient
from taskchain_runtime.capabilities.keystore import register_keystore
from taskchain_runtime.capabilities.local import CapabilitySpec, LocalCapabilityClient

__all__ = [
    "CapabilitySpec",
    "HostCapabilityClient",
    "HttpCapabilityClient",
    "LocalCapabilityClient",
    "build_capability_client",
    "register_keystore",
]
