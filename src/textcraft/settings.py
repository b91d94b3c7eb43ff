"""Scalar chat settings kept in the key-value store."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .storage import KeyValueStore

LOGGER = logging.getLogger(__name__)

API_KEY_KEY = "apiKey"
MODEL_ID_KEY = "modelId"
USE_STREAM_OUTPUT_KEY = "useStreamOutput"
MAX_HISTORY_ITEMS_KEY = "maxHistoryItems"


class ChatSettings(BaseModel):
    """Values the completion client reads at call time."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_key: str = Field(default="", alias=API_KEY_KEY)
    model_id: str = Field(default="", alias=MODEL_ID_KEY)
    use_stream_output: bool = Field(default=False, alias=USE_STREAM_OUTPUT_KEY)
    max_history_items: int = Field(default=50, ge=1, le=10_000, alias=MAX_HISTORY_ITEMS_KEY)

    @field_validator("api_key", "model_id", mode="before")
    @classmethod
    def _normalize_string(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()


class SettingsStore:
    """Read and write ``ChatSettings`` through a ``KeyValueStore``.

    Keys mirror the names the rendering layer uses for its settings form.
    Invalid stored values fall back to defaults field by field.
    """

    def __init__(self, key_value_store: KeyValueStore) -> None:
        self._kv = key_value_store

    def load(self) -> ChatSettings:
        defaults = ChatSettings()
        values: dict[str, Any] = {}
        for field_name, info in ChatSettings.model_fields.items():
            key = info.alias or field_name
            raw = self._kv.get(key)
            if raw is None:
                continue
            try:
                ChatSettings.model_validate({key: raw})
            except ValidationError:
                LOGGER.warning(
                    "settings.value_invalid",
                    extra={"event": "settings.value_invalid", "key": key},
                )
                continue
            values[key] = raw
        if not values:
            return defaults
        return ChatSettings.model_validate(values)

    def save(self, settings: ChatSettings) -> None:
        for key, value in settings.model_dump(by_alias=True).items():
            self._kv.set(key, value)

    def update(self, **changes: Any) -> ChatSettings:
        """Apply field-name keyword changes, persist, and return the result."""
        merged = self.load().model_dump()
        merged.update(changes)
        settings = ChatSettings.model_validate(merged)
        self.save(settings)
        return settings
