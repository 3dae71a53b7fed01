"""Configuration loading and validation for the Ollama session core."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .capabilities import FILE_MODELS, VISION_MODELS
from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ollama-session"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class OllamaConfig(BaseModel):
    """Ollama endpoint used until a URL is saved from the settings screen."""

    host: str = "http://127.0.0.1:11434"
    health_timeout: float = Field(default=5.0, gt=0, le=600)
    generate_timeout: float = Field(default=30.0, gt=0, le=3600)

    @field_validator("host", mode="before")
    @classmethod
    def _validate_host(cls, value: Any) -> str:
        return _require_string(value)

    @model_validator(mode="after")
    def _validate_scheme(self) -> OllamaConfig:
        parsed = urlparse(self.host)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("ollama.host must use http or https scheme.")
        if not parsed.hostname:
            raise ValueError("ollama.host must include a hostname.")
        try:
            parsed.port
        except ValueError as exc:
            raise ValueError(f"ollama.host has an invalid port: {exc}") from exc
        return self


class CapabilitiesConfig(BaseModel):
    """Model identifiers allowed to receive image and file submissions."""

    vision_models: list[str] = Field(default_factory=lambda: sorted(VISION_MODELS))
    file_models: list[str] = Field(default_factory=lambda: sorted(FILE_MODELS))

    @field_validator("vision_models", "file_models", mode="before")
    @classmethod
    def _validate_models(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("Capability lists must be lists of model names.")
        normalized: list[str] = []
        for item in value:
            candidate = _require_string(item).lower()
            if candidate not in normalized:
                normalized.append(candidate)
        return normalized


class AttachmentsConfig(BaseModel):
    """Size limits for picked files and images."""

    max_image_bytes: int = Field(default=10 * 1024 * 1024, ge=1024, le=200 * 1024 * 1024)
    max_file_bytes: int = Field(default=2 * 1024 * 1024, ge=1024, le=200 * 1024 * 1024)


class PersistenceConfig(BaseModel):
    """Location of the durable key-value document."""

    path: str = "~/.local/state/ollama-session/store.json"

    @field_validator("path", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _require_string(value)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/ollama-session/session.log"

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
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    ollama: OllamaConfig = OllamaConfig()
    capabilities: CapabilitiesConfig = CapabilitiesConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
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
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return deepcopy(DEFAULT_CONFIG)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
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
