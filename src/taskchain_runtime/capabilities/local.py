"""In-process capability client with optional schema validation and per-call timeouts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from taskchain_runtime.errors import CapabilityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilitySpec:
    fn: Callable[[Any], Any]
    input_model: type[BaseModel] | None = None
    output_model: type[BaseModel] | None = None


class LocalCapabilityClient:
    """Dispatch host calls to handlers registered under `<capability>.<method>`."""

    def __init__(
        self,
        *,
        registry: dict[str, CapabilitySpec] | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.registry: dict[str, CapabilitySpec] = dict(registry or {})
        self.timeout_s = timeout_s

    def register(
        self,
        capability_name: str,
        method: str,
        fn: Callable[[Any], Any],
        *,
        input_model: type[BaseModel] | None = None,
        output_model: type[BaseModel] | None = None,
    ) -> None:
        self.registry[_key(capability_name, method)] = CapabilitySpec(
            fn=fn, input_model=input_model, output_model=output_model
        )

    def alias(self, alias_name: str, capability_name: str) -> None:
        """Expose every method of `capability_name` under a second name."""
        prefix = f"{capability_name}."
        for key, spec in list(self.registry.items()):
            if key.startswith(prefix):
                self.registry[_key(alias_name, key[len(prefix) :])] = spec

    def capabilities(self) -> list[str]:
        return sorted(self.registry)

    def invoke(self, capability_name: str, method: str, args: Any) -> Any:
        spec = self.registry.get(_key(capability_name, method))
        if spec is None:
            raise CapabilityError(
                f"Unknown capability: {_key(capability_name, method)}",
                capability_name=capability_name,
                method=method,
            )

        started_at = time.perf_counter()
        try:
            payload = spec.input_model.model_validate(args) if spec.input_model else args
            raw_output = self._call(spec, payload, capability_name, method)
            if spec.output_model is not None:
                return spec.output_model.model_validate(raw_output).model_dump(mode="json")
            if isinstance(raw_output, BaseModel):
                return raw_output.model_dump(mode="json")
            return raw_output
        except CapabilityError:
            raise
        except ValidationError as exc:
            raise CapabilityError(
                f"Invalid payload for {_key(capability_name, method)}: {exc.error_count()} error(s)",
                capability_name=capability_name,
                method=method,
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise CapabilityError(
                f"{_key(capability_name, method)} failed: {exc}",
                capability_name=capability_name,
                method=method,
            ) from exc
        finally:
            logger.debug(
                "capability_call capability=%s method=%s duration_ms=%s",
                capability_name,
                method,
                _duration_ms(started_at),
            )

    def _call(self, spec: CapabilitySpec, payload: Any, capability_name: str, method: str) -> Any:
        if self.timeout_s is None:
            return spec.fn(payload)
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(spec.fn, payload)
        try:
            return future.result(timeout=self.timeout_s)
        except TimeoutError as exc:
            raise CapabilityError(
                f"{_key(capability_name, method)} timed out after {self.timeout_s:.2f}s",
                capability_name=capability_name,
                method=method,
            ) from exc
        finally:
            # Never wait for a handler that overran; its thread finishes on its own.
            pool.shutdown(wait=False, cancel_futures=True)


def _key(capability_name: str, method: str) -> str:
    return f"{capability_name}.{method}"


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
