"""Configuration loading and validation for TextCraft."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from platformdirs import user_config_path, user_data_path
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

APP_NAME = "TextCraft"
CONFIG_DIR = user_config_path("textcraft")
CONFIG_PATH = CONFIG_DIR / "config.toml"
DATA_DIR = user_data_path(APP_NAME)

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _non_empty_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = APP_NAME

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _non_empty_string(value)


class ApiConfig(BaseModel):
    """Chat-completion endpoint settings fixed per deployment."""

    base_url: str = "https://ark.cn-beijing.volces.com/api/v3"
    timeout: float = Field(default=60.0, gt=0, le=3600)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        normalized = _non_empty_string(value)
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("api.base_url must use http or https scheme.")
        if not parsed.hostname:
            raise ValueError("api.base_url must include a hostname.")
        return normalized.rstrip("/")


class HistoryConfig(BaseModel):
    """Conversation retention."""

    limit: int = Field(default=50, ge=1, le=10_000)


class PersistenceConfig(BaseModel):
    """Where the primary file and the key-value store live."""

    data_dir: str = str(DATA_DIR)
    file_name: str = "conversations.json"
    kv_path: str = ""

    @field_validator("data_dir", "file_name", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _non_empty_string(value)

    @field_validator("kv_path", mode="before")
    @classmethod
    def _validate_kv_path(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("kv_path must be a string.")
        return value.strip()

    @property
    def file_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.file_name

    @property
    def key_value_path(self) -> Path:
        if self.kv_path:
            return Path(self.kv_path).expanduser()
        return Path(self.data_dir).expanduser() / "defaults.json"


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = str(DATA_DIR / "textcraft.log")

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _non_empty_string(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    app: AppConfig = AppConfig()
    api: ApiConfig = ApiConfig()
    history: HistoryConfig = HistoryConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _validate_config(raw: dict[str, Any]) -> Config:
    """Validate merged config and fall back to safe defaults on bad values."""
    try:
        return Config.model_validate(raw)
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return Config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    return _validate_config(_deep_merge(DEFAULT_CONFIG, raw_data))
