"""Configuration helpers for key lifecycle management."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from platformdirs import user_data_dir

APP_NAME = "EnvKeeper"

DEFAULT_ENV_DIR = "envs"
DEFAULT_BASE_ENV_FILE = ".env"
DEFAULT_METADATA_FILE = "key-metadata.json"
DEFAULT_MAX_AGE_DAYS = 90
DEFAULT_WARNING_THRESHOLD_DAYS = 7


@dataclass(frozen=True)
class KeyLifecycleSettings:
    """Resolved configuration for the key lifecycle subsystem."""

    env_dir: Path
    base_env_file: str = DEFAULT_BASE_ENV_FILE
    metadata_dir: Optional[Path] = None
    metadata_file: str = DEFAULT_METADATA_FILE
    max_age_days: int = DEFAULT_MAX_AGE_DAYS
    warning_threshold_days: int = DEFAULT_WARNING_THRESHOLD_DAYS
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def metadata_path(self) -> Path:
        directory = self.metadata_dir or _default_metadata_dir()
        return directory / self.metadata_file


def _default_metadata_dir() -> Path:
    return Path(user_data_dir(APP_NAME, APP_NAME)) / "key-metadata"


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_path_env(name: str) -> Optional[Path]:
    raw = os.getenv(name)
    if not raw:
        return None
    return Path(raw).expanduser()


@lru_cache(maxsize=1)
def get_settings() -> KeyLifecycleSettings:
    """Return the active settings derived from the environment."""

    return KeyLifecycleSettings(
        env_dir=_get_path_env("ENVKEEPER_ENV_DIR") or Path(DEFAULT_ENV_DIR),
        base_env_file=os.getenv("ENVKEEPER_BASE_ENV_FILE") or DEFAULT_BASE_ENV_FILE,
        metadata_dir=_get_path_env("ENVKEEPER_METADATA_DIR"),
        metadata_file=os.getenv("ENVKEEPER_METADATA_FILE") or DEFAULT_METADATA_FILE,
        max_age_days=_get_int_env("KEY_MAX_AGE_DAYS", DEFAULT_MAX_AGE_DAYS),
        warning_threshold_days=_get_int_env(
            "KEY_WARNING_THRESHOLD_DAYS", DEFAULT_WARNING_THRESHOLD_DAYS
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("ENVKEEPER_LOG_FORMAT", "json").lower(),
    )


__all__ = [
    "APP_NAME",
    "DEFAULT_MAX_AGE_DAYS",
    "DEFAULT_WARNING_THRESHOLD_DAYS",
    "KeyLifecycleSettings",
    "get_settings",
]
