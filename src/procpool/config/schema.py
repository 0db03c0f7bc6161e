from __future__ import annotations

import math
import signal
from dataclasses import dataclass, field
from typing import Any, Literal

from procpool.util.errors import ConfigError

LogLevel = Literal["debug", "info", "warn", "error"]
LOG_LEVELS: dict[str, int] = {"debug": 0, "info": 1, "warn": 2, "error": 3}


def resolve_signal(value: str | int | signal.Signals) -> signal.Signals:
    """Normalize a signal name ("SIGTERM", "term") or number to a Signals member."""
    if isinstance(value, signal.Signals):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return signal.Signals(value)
        except ValueError as exc:
            raise ConfigError(f"unknown signal number: {value}") from exc
    if isinstance(value, str):
        name = value.strip().upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        try:
            return signal.Signals[name]
        except KeyError as exc:
            raise ConfigError(f"unknown signal name: {value}") from exc
    raise ConfigError(f"signal must be name or number, got {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class TaskSpec:
    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: dict[str, str] | None = None
    stdin: str | None = None
    merge_stderr: bool = False
    encoding: str = "utf-8"
    timeout_sec: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(slots=True)
class SchedulerConfig:
    threads: int = 1
    poll_interval: float = 0.1
    max_retry: int = 0
    default_timeout: float | None = 600.0
    kill_signal: str | int | signal.Signals = "SIGTERM"
    global_retry_limit: int = 100
    retry_delay: float = 1.0
    log_level: LogLevel = "info"
    lane_policy: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.threads, int) or isinstance(self.threads, bool) or self.threads < 1:
            raise ConfigError("threads must be int >= 1")
        if not _is_finite_non_negative(self.poll_interval) or self.poll_interval == 0:
            raise ConfigError("poll_interval must be > 0")
        if (
            not isinstance(self.max_retry, int)
            or isinstance(self.max_retry, bool)
            or self.max_retry < 0
        ):
            raise ConfigError("max_retry must be int >= 0")
        if not isinstance(self.global_retry_limit, int) or self.global_retry_limit < 0:
            raise ConfigError("global_retry_limit must be int >= 0")
        if not _is_finite_non_negative(self.retry_delay):
            raise ConfigError("retry_delay must be >= 0")
        if self.default_timeout is not None and (
            not _is_finite_non_negative(self.default_timeout) or self.default_timeout == 0
        ):
            raise ConfigError("default_timeout must be > 0 or None")
        if not isinstance(self.log_level, str) or self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {sorted(LOG_LEVELS)}")
        self.kill_signal = resolve_signal(self.kill_signal)


def _is_finite_non_negative(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value) and value >= 0


@dataclass(slots=True)
class TaskSet:
    """Parsed task file: settings plus either a flat list or grouped lanes."""

    config: SchedulerConfig
    tasks: list[TaskSpec] = field(default_factory=list)
    groups: list[list[TaskSpec]] = field(default_factory=list)

    @property
    def grouped(self) -> bool:
        return bool(self.groups)
