"""Host Capability Client interface."""

from __future__ import annotations

from typing import Any, Protocol


class HostCapabilityClient(Protocol):
    """Perform one host call. Any non-success outcome raises CapabilityError.

    Retries, if any, are the client's own concern; the dispatcher never retries.
    """

    def invoke(self, capability_name: str, method: str, args: Any) -> Any: ...
