"""HTTP capability client for services exposed as edge functions."""

from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib import error, parse, request

from taskchain_runtime.errors import CapabilityError

logger = logging.getLogger(__name__)

# Short capability names map to the deployed wrapper functions.
SERVICE_MAP: dict[str, str] = {
    "database": "wrappedsupabase",
    "keystore": "wrappedkeystore",
    "openai": "wrappedopenai",
    "websearch": "wrappedwebsearch",
    "gapi": "wrappedgapi",
}


class HttpCapabilityClient:
    """POST `{"chain": [{"property": method, "args": args}]}` to `/functions/v1/<service>`."""

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:54321",
        auth_token: str = "",
        timeout_s: float = 30.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
        service_map: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.service_map = dict(SERVICE_MAP if service_map is None else service_map)

    def url_for(self, capability_name: str) -> str:
        service = self.service_map.get(capability_name, capability_name)
        return f"{self.base_url}/functions/v1/{parse.quote(service, safe='')}"

    def invoke(self, capability_name: str, method: str, args: Any) -> Any:
        url = self.url_for(capability_name)
        payload = {"chain": [{"property": method, "args": args}]}
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                body = self._request(url, payload)
            except (TimeoutError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "capability_call failed attempt=%d/%d capability=%s method=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    capability_name,
                    method,
                    exc,
                )
                if not _is_retryable(exc):
                    break
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
                continue
            if isinstance(body, dict) and "result" in body:
                return body["result"]
            return body
        raise self._to_capability_error(last_error, capability_name, method)

    def _request(self, url: str, payload: dict[str, Any]) -> Any:
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.auth_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"Service call failed: {exc.code} {exc.reason} - {detail}",
                exc.headers,
                None,
            ) from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise error.URLError(f"Service returned invalid JSON: {exc}") from exc

    @staticmethod
    def _to_capability_error(
        exc: Exception | None, capability_name: str, method: str
    ) -> CapabilityError:
        if isinstance(exc, error.HTTPError):
            return CapabilityError(
                str(exc.msg),
                capability_name=capability_name,
                method=method,
                status_code=exc.code,
            )
        return CapabilityError(
            f"Service call failed: {exc}",
            capability_name=capability_name,
            method=method,
        )


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, error.HTTPError):
        return exc.code == 429 or exc.code >= 500
    return True
