"""
Engine settings and logging setup.

Every setting can come from the environment (ACTIVITY_CUBE_*), and the
scripts expose the same knobs as command-line flags.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

ENV_PREFIX = 'ACTIVITY_CUBE_'


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def configure_threads() -> int:
    """Let polars use every core; returns the thread count."""
    cores = os.cpu_count() or 8
    os.environ.setdefault('POLARS_MAX_THREADS', str(cores))
    return cores


class EngineSettings(BaseSettings):
    """Engine configuration, read from ACTIVITY_CUBE_* environment variables."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra='ignore')

    rollup_dir: Optional[Path] = Field(default=None, description="Rollup directory (None keeps rollups in memory)")
    raw_timeout_s: Optional[float] = Field(default=30.0, description="Deadline for raw event scans, 0 disables it")
    refresh_max_attempts: int = Field(default=3, ge=1, description="Build attempts per partition")
    refresh_backoff_s: float = Field(default=0.5, ge=0, description="First retry delay")
    refresh_backoff_multiplier: float = Field(default=2.0, ge=1, description="Retry delay growth")
    workers: int = Field(default=4, ge=1, description="Threads for concurrent queries")
    log_level: str = Field(default='INFO', description="Logging level")

    @field_validator('rollup_dir', mode='before')
    @classmethod
    def empty_dir_is_unset(cls, v):
        return None if v == '' else v

    @field_validator('raw_timeout_s')
    @classmethod
    def zero_timeout_disables_deadline(cls, v: Optional[float]) -> Optional[float]:
        return v if v is not None and v > 0 else None

    @field_validator('log_level')
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'EngineSettings':
        """
        Settings from the process environment, or from `environ` when given.

        Example:
            ACTIVITY_CUBE_ROLLUP_DIR=rollups ACTIVITY_CUBE_RAW_TIMEOUT_S=0 python3 run.py
            (a timeout of 0 disables the deadline)

        Raises:
            pydantic.ValidationError (a ValueError): a variable has an invalid value
        """
        if environ is None:
            return cls()
        values = {
            name[len(ENV_PREFIX):].lower(): value
            for name, value in environ.items()
            if name.startswith(ENV_PREFIX) and name[len(ENV_PREFIX):].lower() in cls.model_fields
        }
        return cls(**values)
