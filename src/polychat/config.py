"""Configuration loading and validation for the polychat orchestrator."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigValidationError
from .models import Provider

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "polychat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
GEMINI_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")


def _validate_http_url(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    parsed = urlparse(normalized)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError("URL must use http or https scheme.")
    if not parsed.hostname:
        raise ValueError("URL must include a hostname.")
    return normalized


class ProviderSettings(BaseModel):
    """Read-only provider snapshot consumed once per stream request."""

    model_config = ConfigDict(frozen=True)

    active_provider: Provider = Provider.FOUNDRY
    foundry_url: str = "http://127.0.0.1:8000/v1"
    ollama_url: str = "http://localhost:11434"
    system_prompt: str = "You are a helpful AI assistant."
    use_gemini_direct: bool = False
    api_key: str = "local"
    gemini_api_key: str = ""
    default_model: str = ""

    @field_validator("foundry_url", "ollama_url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        return _validate_http_url(value)

    @field_validator("system_prompt", "gemini_api_key", "default_model", mode="before")
    @classmethod
    def _normalize_string(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("api_key", mode="before")
    @classmethod
    def _validate_api_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip() or "local"

    def resolved_gemini_api_key(self) -> str:
        """Return the configured Gemini key, falling back to the environment."""
        if self.gemini_api_key:
            return self.gemini_api_key
        for name in GEMINI_KEY_ENV_VARS:
            candidate = os.environ.get(name, "").strip()
            if candidate:
                return candidate
        return ""

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ProviderSettings:
        return cls.model_validate(config.get("provider", {}))


class ProbeConfig(BaseModel):
    """Health-check timeouts and local discovery candidates."""

    timeout_seconds: float = Field(default=3.0, gt=0, le=60)
    discovery_timeout_seconds: float = Field(default=1.0, gt=0, le=60)
    discovery_hosts: list[str] = Field(
        default_factory=lambda: ["http://127.0.0.1", "http://localhost"]
    )
    discovery_ports: list[str] = Field(
        default_factory=lambda: ["8000", "11434", "8080"]
    )

    @field_validator("discovery_hosts", mode="before")
    @classmethod
    def _validate_hosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list) or not value:
            raise ValueError("discovery_hosts must be a non-empty list.")
        return [_validate_http_url(item).rstrip("/") for item in value]

    @field_validator("discovery_ports", mode="before")
    @classmethod
    def _validate_ports(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("discovery_ports must be a list.")
        ports: list[str] = []
        for item in value:
            candidate = str(item).strip()
            if not candidate.isdigit() or not 0 < int(candidate) < 65536:
                raise ValueError(f"Invalid port {item!r}.")
            if candidate not in ports:
                ports.append(candidate)
        return ports


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/polychat/app.log"

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
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    provider: ProviderSettings = ProviderSettings()
    probe: ProbeConfig = ProbeConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump(mode="json")


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
        return Config.model_validate(raw).model_dump(mode="json")
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "reason": str(exc)},
        )
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
