from __future__ import annotations

import io
import json
import time
from typing import Any
from urllib import error

import pytest
from pydantic import BaseModel

from taskchain_runtime.capabilities import HttpCapabilityClient, LocalCapabilityClient
from taskchain_runtime.capabilities import http as http_module
from taskchain_runtime.errors import CapabilityError
from taskchain_runtime.storage import InMemoryRunStore


class WordsInput(BaseModel):
    text: str


class WordsOutput(BaseModel):
    words: list[str]


def test_local_client_validates_input_and_output() -> None:
    client = LocalCapabilityClient()
    client.register(
        "text",
        "split",
        lambda payload: {"words": payload.text.split()},
        input_model=WordsInput,
        output_model=WordsOutput,
    )

    assert client.invoke("text", "split", {"text": "a b"}) == {"words": ["a", "b"]}
    with pytest.raises(CapabilityError, match="Invalid payload for text.split"):
        client.invoke("text", "split", {"wrong": 1})


def test_local_client_unknown_capability() -> None:
    with pytest.raises(CapabilityError, match="Unknown capability: nope.call") as exc_info:
        LocalCapabilityClient().invoke("nope", "call", None)
    assert exc_info.value.capability_name == "nope"


def test_local_client_wraps_handler_errors() -> None:
    client = LocalCapabilityClient()

    def broken(_: Any) -> Any:
        raise KeyError("missing")

    client.register("svc", "broken", broken)
    with pytest.raises(CapabilityError, match="svc.broken failed"):
        client.invoke("svc", "broken", {})


def test_local_client_timeout_returns_without_waiting_for_handler() -> None:
    client = LocalCapabilityClient(timeout_s=0.05)
    client.register("svc", "slow", lambda _: time.sleep(0.5))

    started_at = time.perf_counter()
    with pytest.raises(CapabilityError, match="timed out"):
        client.invoke("svc", "slow", None)

    assert time.perf_counter() - started_at < 0.4


def test_keystore_capability_and_alias(capabilities: LocalCapabilityClient, store: InMemoryRunStore) -> None:
    stored = capabilities.invoke("keystore", "set", {"key": "token", "value": {"v": 1}})
    assert stored["key"] == "token"
    assert store.get_value("token") == {"v": 1}

    assert capabilities.invoke("kv", "get", {"key": "token"}) == {"v": 1}
    assert capabilities.invoke("kv", "delete", {"key": "token"}) == {"key": "token", "deleted": True}
    assert capabilities.invoke("keystore", "get", {"key": "token"}) is None
    assert "kv.set" in capabilities.capabilities()

    with pytest.raises(CapabilityError):
        capabilities.invoke("keystore", "get", {"key": "token", "extra": True})


class _FakeResponse:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _http_error(code: int, body: str = "nope") -> error.HTTPError:
    return error.HTTPError(
        "http://svc/functions/v1/wrappedkeystore", code, "Bad", {}, io.BytesIO(body.encode())
    )


def test_http_client_posts_chain_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["auth"] = req.get_header("Authorization")
        captured["timeout"] = timeout
        return _FakeResponse(json.dumps({"result": {"value": "abc"}}))

    monkeypatch.setattr(http_module.request, "urlopen", fake_urlopen)
    client = HttpCapabilityClient(base_url="http://svc/", auth_token="secret", timeout_s=3)

    assert client.invoke("keystore", "get", ["token"]) == {"value": "abc"}
    assert captured == {
        "url": "http://svc/functions/v1/wrappedkeystore",
        "body": {"chain": [{"property": "get", "args": ["token"]}]},
        "auth": "Bearer secret",
        "timeout": 3,
    }


def test_http_client_unmapped_service_and_plain_body(monkeypatch: pytest.MonkeyPatch) -> None:
    urls: list[str] = []

    def fake_urlopen(req, timeout):
        urls.append(req.full_url)
        return _FakeResponse(json.dumps([1, 2, 3]))

    monkeypatch.setattr(http_module.request, "urlopen", fake_urlopen)
    client = HttpCapabilityClient(base_url="http://svc")

    assert client.invoke("custom", "list", None) == [1, 2, 3]
    assert urls == ["http://svc/functions/v1/custom"]


def test_http_client_maps_status_errors_without_retrying_4xx(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []

    def fake_urlopen(req, timeout):
        attempts.append(1)
        raise _http_error(404, "no such method")

    monkeypatch.setattr(http_module.request, "urlopen", fake_urlopen)
    client = HttpCapabilityClient(base_url="http://svc", max_retries=3)

    with pytest.raises(CapabilityError, match="404") as exc_info:
        client.invoke("keystore", "get", ["x"])
    assert exc_info.value.status_code == 404
    assert len(attempts) == 1


def test_http_client_retries_server_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    responses: list[Any] = [_http_error(503), _FakeResponse(json.dumps({"result": 7}))]

    def fake_urlopen(req, timeout):
        item = responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(http_module.request, "urlopen", fake_urlopen)
    client = HttpCapabilityClient(base_url="http://svc", max_retries=1)

    assert client.invoke("database", "select", {}) == 7
    assert responses == []


def test_http_client_rejects_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        http_module.request, "urlopen", lambda req, timeout: _FakeResponse("<html>")
    )
    with pytest.raises(CapabilityError, match="invalid JSON"):
        HttpCapabilityClient(base_url="http://svc").invoke("database", "select", {})


def test_http_client_empty_body_is_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(http_module.request, "urlopen", lambda req, timeout: _FakeResponse("  "))
    assert HttpCapabilityClient(base_url="http://svc").invoke("keystore", "set", []) is None
