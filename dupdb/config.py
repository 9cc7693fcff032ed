"""Runtime settings for the duplicate index, resolved from the environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

import platformdirs
from pydantic import BaseModel, Field, field_validator

APP_NAME = "dupdb"
INDEX_FILENAME = "dupdb.db"
DEFAULT_ENV = "dev"
DEFAULT_LOCK_TIMEOUT = 3.0
DEFAULT_CHUNK_SIZE = 1024 * 1024

INDEX_PATH_ENV = "DUPDB_INDEX_PATH"
LOCK_TIMEOUT_ENV = "DUPDB_LOCK_TIMEOUT"
CHUNK_SIZE_ENV = "DUPDB_CHUNK_SIZE"
ENV_ENV = "DUPDB_ENV"
LOG_DIR_ENV = "DUPDB_LOG_DIR"
BACKUP_DIR_ENV = "DUPDB_BACKUP_DIR"


def default_index_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME)) / INDEX_FILENAME


def default_backup_dir() -> Path:
    try:
        return Path.home()
    except RuntimeError:
        return Path.cwd()


class Settings(BaseModel):
    index_path: Path = Field(default_factory=default_index_path)
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    environment: str = DEFAULT_ENV
    log_dir: Optional[Path] = None
    backup_dir: Path = Field(default_factory=default_backup_dir)

    @field_validator("lock_timeout")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("lock_timeout cannot be negative")
        return value

    @field_validator("chunk_size")
    @classmethod
    def _check_chunk_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chunk_size must be a positive number of bytes")
        return value

    @field_validator("environment")
    @classmethod
    def _lower_env(cls, value: str) -> str:
        return value.strip().lower() or DEFAULT_ENV

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``DUPDB_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values = {}
        if env.get(INDEX_PATH_ENV):
            values["index_path"] = Path(env[INDEX_PATH_ENV]).expanduser()
        if env.get(LOCK_TIMEOUT_ENV):
            values["lock_timeout"] = env[LOCK_TIMEOUT_ENV]
        if env.get(CHUNK_SIZE_ENV):
            values["chunk_size"] = env[CHUNK_SIZE_ENV]
        if env.get(ENV_ENV):
            values["environment"] = env[ENV_ENV]
        if env.get(LOG_DIR_ENV):
            values["log_dir"] = Path(env[LOG_DIR_ENV]).expanduser()
        if env.get(BACKUP_DIR_ENV):
            values["backup_dir"] = Path(env[BACKUP_DIR_ENV]).expanduser()
        return cls(**values)
