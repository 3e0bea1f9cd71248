"""Configuration management for the ticket mirror."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)

_ALL_RECORD_TYPES = ("incident", "change_task", "sc_task")


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class GateSettings(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, ge=0)
    monitoring_period_seconds: float = Field(default=60.0, gt=0)
    half_open_max_calls: int = Field(default=3, ge=1)
    minimum_calls: int = Field(default=5, ge=1)


class SyncSettings(BaseModel):
    batch_size: int = Field(default=100, ge=1, le=10_000)
    max_attempts: int = Field(default=3, ge=1, le=10)
    max_workers: int = Field(default=8, ge=1, le=64)
    window_minutes: int = Field(default=60, ge=1)
    interval_seconds: float = Field(default=300.0, gt=0)
    record_types: tuple[str, ...] = Field(default=_ALL_RECORD_TYPES)
    actor: str = Field(default="reconciler")

    @field_validator("record_types")
    @classmethod
    def _validate_record_types(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = [item for item in value if item not in _ALL_RECORD_TYPES]
        if unknown:
            raise ValueError(f"Unknown record types: {', '.join(unknown)}")
        if not value:
            raise ValueError("At least one record type is required")
        return value


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/ticket_mirror.sqlite")
    sqlite_wal: bool = Field(default=True)


class RemoteSettings(BaseModel):
    base_url: str | None = Field(default=None, description="Remote system base URL")
    username: str | None = Field(default=None)
    password: str | None = Field(default=None)
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    page_size: int = Field(default=1000, ge=1, le=10_000)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        candidate = value.strip().rstrip("/")
        if not candidate:
            return None
        if not candidate.lower().startswith(("http://", "https://")):
            raise ValueError("base_url must use http or https")
        return candidate


class RulesSettings(BaseModel):
    path: str | None = Field(default=None, description="Optional record rules YAML file")


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    rules: RulesSettings = Field(default_factory=RulesSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "gate_failure_threshold": "GATE_FAILURE_THRESHOLD",
    "gate_reset_timeout": "GATE_RESET_TIMEOUT_SECONDS",
    "gate_monitoring_period": "GATE_MONITORING_PERIOD_SECONDS",
    "gate_half_open_max_calls": "GATE_HALF_OPEN_MAX_CALLS",
    "gate_minimum_calls": "GATE_MINIMUM_CALLS",
    "sync_batch_size": "SYNC_BATCH_SIZE",
    "sync_max_attempts": "SYNC_MAX_ATTEMPTS",
    "sync_max_workers": "SYNC_MAX_WORKERS",
    "sync_window_minutes": "SYNC_WINDOW_MINUTES",
    "sync_interval": "SYNC_INTERVAL_SECONDS",
    "sync_record_types": "SYNC_RECORD_TYPES",
    "sync_actor": "SYNC_ACTOR",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "remote_base_url": "REMOTE_BASE_URL",
    "remote_username": "REMOTE_USERNAME",
    "remote_password": "REMOTE_PASSWORD",
    "remote_timeout": "REMOTE_TIMEOUT_SECONDS",
    "remote_page_size": "REMOTE_PAGE_SIZE",
    "rules_path": "RULES_PATH",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    rules_path_env = os.getenv(ENV_KEYS["rules_path"])
    record_types_env = _split_csv(os.getenv(ENV_KEYS["sync_record_types"]))

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "gate": {
            "failure_threshold": _env_int(
                ENV_KEYS["gate_failure_threshold"], GateSettings().failure_threshold
            ),
            "reset_timeout_seconds": _env_float(
                ENV_KEYS["gate_reset_timeout"], GateSettings().reset_timeout_seconds
            ),
            "monitoring_period_seconds": _env_float(
                ENV_KEYS["gate_monitoring_period"],
                GateSettings().monitoring_period_seconds,
            ),
            "half_open_max_calls": _env_int(
                ENV_KEYS["gate_half_open_max_calls"], GateSettings().half_open_max_calls
            ),
            "minimum_calls": _env_int(
                ENV_KEYS["gate_minimum_calls"], GateSettings().minimum_calls
            ),
        },
        "sync": {
            "batch_size": _env_int(ENV_KEYS["sync_batch_size"], SyncSettings().batch_size),
            "max_attempts": _env_int(
                ENV_KEYS["sync_max_attempts"], SyncSettings().max_attempts
            ),
            "max_workers": _env_int(ENV_KEYS["sync_max_workers"], SyncSettings().max_workers),
            "window_minutes": _env_int(
                ENV_KEYS["sync_window_minutes"], SyncSettings().window_minutes
            ),
            "interval_seconds": _env_float(
                ENV_KEYS["sync_interval"], SyncSettings().interval_seconds
            ),
            "record_types": tuple(record_types_env) or SyncSettings().record_types,
            "actor": os.getenv(ENV_KEYS["sync_actor"], SyncSettings().actor),
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool(ENV_KEYS["sqlite_wal"], StorageSettings().sqlite_wal),
        },
        "remote": {
            "base_url": os.getenv(ENV_KEYS["remote_base_url"], "").strip() or None,
            "username": os.getenv(ENV_KEYS["remote_username"]) or None,
            "password": os.getenv(ENV_KEYS["remote_password"]) or None,
            "timeout_seconds": _env_float(
                ENV_KEYS["remote_timeout"], RemoteSettings().timeout_seconds
            ),
            "page_size": _env_int(ENV_KEYS["remote_page_size"], RemoteSettings().page_size),
        },
        "rules": {
            "path": _resolve_path(rules_path_env) if rules_path_env else None,
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
