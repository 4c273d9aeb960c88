"""Built-in `keystore` capability backed by the Run Store's Key/Value entries."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskchain_runtime.capabilities.local import LocalCapabilityClient
from taskchain_runtime.storage.base import RunStore

KEYSTORE_CAPABILITY = "keystore"
KEYSTORE_ALIASES = ("kv",)


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class KeyInput(StrictModel):
    key: str = Field(min_length=1)


class SetValueInput(StrictModel):
    key: str = Field(min_length=1)
    value: Any = None


def register_keystore(client: LocalCapabilityClient, store: RunStore) -> None:
    """Register get/set/delete handlers plus the short `kv` alias."""

    def get_value(payload: KeyInput) -> Any:
        return store.get_value(payload.key)

    def set_value(payload: SetValueInput) -> dict[str, Any]:
        entry = store.put_value(payload.key, payload.value)
        return {"key": entry.key, "updated_at": entry.updated_at.isoformat()}

    def delete_value(payload: KeyInput) -> dict[str, Any]:
        return {"key": payload.key, "deleted": store.delete_value(payload.key)}

    client.register(KEYSTORE_CAPABILITY, "get", get_value, input_model=KeyInput)
    client.register(KEYSTORE_CAPABILITY, "set", set_value, input_model=SetValueInput)
    client.register(KEYSTORE_CAPABILITY, "delete", delete_value, input_model=KeyInput)
    for alias_name in KEYSTORE_ALIASES:
        client.alias(alias_name, KEYSTORE_CAPABILITY)
