"""Configuration management for the stackgate orchestrator."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class OrchestratorSettings(BaseModel):
    concurrency: int = Field(default=4, ge=1, le=64)
    conflict_retries: int = Field(default=2, ge=0, le=10)


class LockSettings(BaseModel):
    timeout_seconds: float = Field(default=30.0, ge=0, le=3600)
    retries: int = Field(default=3, ge=0, le=20)
    wait: bool = Field(
        default=True,
        description="Block until the lock frees up (True) or fail fast (False).",
    )


class ExecutionSettings(BaseModel):
    max_retries: int = Field(default=2, ge=0, le=10)
    backoff_base_seconds: float = Field(default=0.5, ge=0, le=60)


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./.stackgate/audit.sqlite")
    sqlite_wal: bool = Field(default=True)
    artifact_path: str = Field(default="./.stackgate/artifacts")
    live_state_path: str = Field(
        default="./.stackgate/live",
        description="Where the local resource provider keeps live resources.",
    )


class PolicySettings(BaseModel):
    path: str = Field(default="./policy.yaml")
    command_timeout_seconds: float = Field(default=30.0, gt=0, le=600)


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    default_profile: str | None = Field(default=None)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "concurrency": "STACKGATE_CONCURRENCY",
    "conflict_retries": "STACKGATE_CONFLICT_RETRIES",
    "lock_timeout": "STACKGATE_LOCK_TIMEOUT_SECONDS",
    "lock_retries": "STACKGATE_LOCK_RETRIES",
    "lock_wait": "STACKGATE_LOCK_WAIT",
    "max_retries": "STACKGATE_MAX_RETRIES",
    "backoff_base": "STACKGATE_BACKOFF_BASE_SECONDS",
    "sqlite_path": "SQLITE_PATH",
    "artifact_path": "ARTIFACT_PATH",
    "live_state_path": "STACKGATE_LIVE_STATE_PATH",
    "policy_path": "STACKGATE_POLICY_PATH",
    "policy_timeout": "STACKGATE_POLICY_TIMEOUT_SECONDS",
    "aws_region": "AWS_DEFAULT_REGION",
    "aws_profile": "AWS_PROFILE",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _resolve_path(path: str) -> str:
    return str(Path(path).expanduser().resolve())


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
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "orchestrator": {
            "concurrency": _env_int(
                ENV_KEYS["concurrency"], OrchestratorSettings().concurrency
            ),
            "conflict_retries": _env_int(
                ENV_KEYS["conflict_retries"], OrchestratorSettings().conflict_retries
            ),
        },
        "lock": {
            "timeout_seconds": _env_float(
                ENV_KEYS["lock_timeout"], LockSettings().timeout_seconds
            ),
            "retries": _env_int(ENV_KEYS["lock_retries"], LockSettings().retries),
            "wait": _env_bool(ENV_KEYS["lock_wait"], LockSettings().wait),
        },
        "execution": {
            "max_retries": _env_int(ENV_KEYS["max_retries"], ExecutionSettings().max_retries),
            "backoff_base_seconds": _env_float(
                ENV_KEYS["backoff_base"], ExecutionSettings().backoff_base_seconds
            ),
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
            "artifact_path": _resolve_path(
                os.getenv(ENV_KEYS["artifact_path"], StorageSettings().artifact_path)
            ),
            "live_state_path": _resolve_path(
                os.getenv(ENV_KEYS["live_state_path"], StorageSettings().live_state_path)
            ),
        },
        "policy": {
            "path": _resolve_path(os.getenv(ENV_KEYS["policy_path"], PolicySettings().path)),
            "command_timeout_seconds": _env_float(
                ENV_KEYS["policy_timeout"], PolicySettings().command_timeout_seconds
            ),
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "default_profile": os.getenv(ENV_KEYS["aws_profile"]),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    return settings
