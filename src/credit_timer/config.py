"""Configuration management for the credit timer."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import InvalidArgument

DEFAULT_DB_PATH = Path.home() / ".credit-timer" / "timer.db"
DEFAULT_NAMESPACE = "credit_timer"
DEFAULT_TICK_SECONDS = 1.0
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7788
DEFAULT_LOG_LEVEL = "INFO"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class TimerConfig:
    """Runtime settings for the engine, the API server and the CLI."""

    db_path: Path = DEFAULT_DB_PATH
    namespace: str = DEFAULT_NAMESPACE
    tick_seconds: float = DEFAULT_TICK_SECONDS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL

    def validate(self) -> None:
        """Validate configuration."""
        if not self.namespace:
            raise InvalidArgument("namespace must not be empty")
        if self.tick_seconds <= 0:
            raise InvalidArgument(f"tick interval must be positive, got {self.tick_seconds}")
        if not 0 < self.port < 65536:
            raise InvalidArgument(f"port out of range: {self.port}")
        if self.log_level not in _LOG_LEVELS:
            valid = ", ".join(_LOG_LEVELS)
            raise InvalidArgument(f"Invalid log level '{self.log_level}'. Valid options: {valid}")

    def with_overrides(self, **overrides) -> "TimerConfig":
        """Copy with the given non-None fields replaced, then validated."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "db_path" in changes:
            changes["db_path"] = Path(changes["db_path"]).expanduser()
        config = replace(self, **changes)
        config.validate()
        return config


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidArgument(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidArgument(f"{name} must be an integer, got {raw!r}") from None


def load_config(dotenv: bool = True) -> TimerConfig:
    """Build a TimerConfig from CREDIT_TIMER_* environment variables.

    A ``.env`` file in the working directory is read first when ``dotenv`` is
    set; variables already present in the environment win.
    """
    if dotenv:
        load_dotenv(Path.cwd() / ".env")

    db_raw = os.environ.get("CREDIT_TIMER_DB")
    config = TimerConfig(
        db_path=Path(db_raw).expanduser() if db_raw else DEFAULT_DB_PATH,
        namespace=os.environ.get("CREDIT_TIMER_NAMESPACE", DEFAULT_NAMESPACE),
        tick_seconds=_env_float("CREDIT_TIMER_TICK_SECONDS", DEFAULT_TICK_SECONDS),
        host=os.environ.get("CREDIT_TIMER_HOST", DEFAULT_HOST),
        port=_env_int("CREDIT_TIMER_PORT", DEFAULT_PORT),
        log_level=os.environ.get("CREDIT_TIMER_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )
    config.validate()
    return config
