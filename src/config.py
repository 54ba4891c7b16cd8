"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting `WINDOW_*` environment variables into a strongly-typed Pydantic model.
- Validating interval relationships and providing actionable error messages.
"""

import os
from pathlib import Path
from typing import TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

_T = TypeVar("_T", int, float)

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _get_env_str(name: str, default: str) -> str:
    """Read a string env var with a default."""
    value = os.getenv(name, "").strip()
    return value or default


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


class PipelineConfig(BaseModel):
    """Tuning knobs for the window writer and the correlation reader."""

    sampling_interval_ms: int = Field(default=5000, description="Window size in milliseconds")
    drain_interval_ms: int = Field(default=1000, description="Period of the writer's drain cycle")
    initial_delay_ms: int = Field(default=5000, description="Delay before the first drain")
    retention_ms: int = Field(default=60000, description="Age after which sealed windows are deleted")
    cleanup_period_ms: int = Field(
        default=60000, description="Minimum horizon advance before a cleanup scan is worthwhile"
    )
    expiry_ms: int = Field(default=600000, description="Max age of an in-flight request before it stops rolling over")
    queue_max_size: int = Field(default=100000, description="Event queue capacity; overflow is counted and dropped")
    log_dir: Path = Field(default=Path("window_logs"), description="Directory holding window log files")
    writer_enabled: bool = Field(default=True, description="When false, drained events are discarded")
    log_level: str = Field(default="INFO", description="Root logging level for the entrypoint")

    @field_validator(
        "sampling_interval_ms",
        "drain_interval_ms",
        "retention_ms",
        "cleanup_period_ms",
        "expiry_ms",
        "queue_max_size",
    )
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be > 0. Got: {v}")
        return v

    @field_validator("initial_delay_ms")
    def validate_initial_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0. Got: {v}")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"must be one of {sorted(_LOG_LEVELS)}. Got: {v!r}")
        return level

    @model_validator(mode="after")
    def validate_retention_covers_open_windows(self) -> "PipelineConfig":
        # The reference window and the next window may both be open at once.
        if self.retention_ms < 2 * self.sampling_interval_ms:
            raise ValueError(
                "WINDOW_RETENTION_MS must be at least twice WINDOW_SAMPLING_INTERVAL_MS "
                f"({self.retention_ms} < 2 * {self.sampling_interval_ms})"
            )
        return self


def load_config() -> PipelineConfig:
    """Load pipeline configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when a value cannot be parsed
      or the intervals are inconsistent.
    """
    dotenv.load_dotenv()

    return PipelineConfig(
        sampling_interval_ms=_get_env_number("WINDOW_SAMPLING_INTERVAL_MS", 5000, int),
        drain_interval_ms=_get_env_number("WINDOW_DRAIN_INTERVAL_MS", 1000, int),
        initial_delay_ms=_get_env_number("WINDOW_INITIAL_DELAY_MS", 5000, int),
        retention_ms=_get_env_number("WINDOW_RETENTION_MS", 60000, int),
        cleanup_period_ms=_get_env_number("WINDOW_CLEANUP_PERIOD_MS", 60000, int),
        expiry_ms=_get_env_number("WINDOW_EXPIRY_MS", 600000, int),
        queue_max_size=_get_env_number("WINDOW_QUEUE_MAX_SIZE", 100000, int),
        log_dir=Path(_get_env_str("WINDOW_LOG_DIR", "window_logs")),
        writer_enabled=_get_env_bool("WINDOW_WRITER_ENABLED", True),
        log_level=_get_env_str("WINDOW_LOG_LEVEL", "INFO"),
    )
