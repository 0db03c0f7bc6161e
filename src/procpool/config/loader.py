from __future__ import annotations

import math
import shlex
from pathlib import Path
from typing import Any

import yaml

from procpool.config.schema import SchedulerConfig, TaskSet, TaskSpec
from procpool.util.errors import ConfigError, TaskFileError

_ALLOWED_ROOT_KEYS = {"settings", "tasks", "groups"}
_ALLOWED_TASK_KEYS = {
    "command",
    "args",
    "cwd",
    "env",
    "stdin",
    "merge_stderr",
    "encoding",
    "timeout_sec",
    "meta",
}
_ALLOWED_SETTINGS_KEYS = {
    "threads",
    "poll_interval",
    "max_retry",
    "default_timeout",
    "kill_signal",
    "global_retry_limit",
    "retry_delay",
    "log_level",
    "lane_policy",
}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_str_without_nul(value: object) -> bool:
    return isinstance(value, str) and "\x00" not in value


def _is_valid_env_key(value: object) -> bool:
    return _is_non_blank_str(value) and "=" not in value


def normalize_args(args: str | list[str] | None) -> tuple[str, ...]:
    if args is None:
        return ()
    if isinstance(args, str):
        try:
            parts = shlex.split(args)
        except ValueError as exc:
            raise TaskFileError(f"invalid args string: {exc}") from exc
        if any("\x00" in part for part in parts):
            raise TaskFileError("args must not contain null bytes")
        return tuple(parts)
    if isinstance(args, list) and all(_is_str_without_nul(p) for p in args):
        return tuple(args)
    raise TaskFileError("args must be str or list[str]")


def _parse_task(raw: Any, where: str) -> TaskSpec:
    if not isinstance(raw, dict):
        raise TaskFileError(f"{where} must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise TaskFileError(f"{where} fields must use string keys")
    unknown = set(raw.keys()) - _ALLOWED_TASK_KEYS
    if unknown:
        raise TaskFileError(f"{where} has unknown fields: {sorted(unknown)}")
    if "command" not in raw or not _is_non_blank_str(raw["command"]):
        raise TaskFileError(f"{where}.command is required and must be non-empty string")

    timeout_sec = raw.get("timeout_sec")
    if timeout_sec is not None:
        if not _is_finite_real_number(timeout_sec) or timeout_sec <= 0:
            raise TaskFileError(f"{where}.timeout_sec must be > 0")
        timeout_sec = float(timeout_sec)

    cwd = raw.get("cwd")
    if cwd is not None and not _is_non_blank_str(cwd):
        raise TaskFileError(f"{where}.cwd must be non-empty string")

    env = raw.get("env")
    if env is not None and (
        not isinstance(env, dict)
        or not all(_is_valid_env_key(k) and _is_str_without_nul(v) for k, v in env.items())
    ):
        raise TaskFileError(f"{where}.env must be dict[str, str]")

    stdin = raw.get("stdin")
    if stdin is not None and not isinstance(stdin, str):
        raise TaskFileError(f"{where}.stdin must be string")

    merge_stderr = raw.get("merge_stderr", False)
    if not isinstance(merge_stderr, bool):
        raise TaskFileError(f"{where}.merge_stderr must be bool")

    encoding = raw.get("encoding", "utf-8")
    if not _is_non_blank_str(encoding):
        raise TaskFileError(f"{where}.encoding must be non-empty string")

    meta = raw.get("meta", {})
    if not isinstance(meta, dict):
        raise TaskFileError(f"{where}.meta must be mapping")

    return TaskSpec(
        command=raw["command"],
        args=normalize_args(raw.get("args")),
        cwd=cwd,
        env=env,
        stdin=stdin,
        merge_stderr=merge_stderr,
        encoding=encoding,
        timeout_sec=timeout_sec,
        meta=meta,
    )


def _parse_settings(raw: Any) -> SchedulerConfig:
    if raw is None:
        return SchedulerConfig()
    if not isinstance(raw, dict):
        raise TaskFileError("settings must be a mapping")
    unknown = set(raw.keys()) - _ALLOWED_SETTINGS_KEYS
    if unknown:
        raise TaskFileError(f"settings has unknown fields: {sorted(unknown)}")
    try:
        return SchedulerConfig(**raw)
    except ConfigError as exc:
        raise TaskFileError(f"invalid settings: {exc}") from exc


def parse_task_set(raw: Any) -> TaskSet:
    if not isinstance(raw, dict):
        raise TaskFileError("task file root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise TaskFileError("task file root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_ROOT_KEYS
    if unknown_root:
        raise TaskFileError(f"task file contains unknown fields: {sorted(unknown_root)}")

    has_tasks = "tasks" in raw
    has_groups = "groups" in raw
    if has_tasks == has_groups:
        raise TaskFileError("task file must define exactly one of 'tasks' or 'groups'")

    config = _parse_settings(raw.get("settings"))
    if has_tasks:
        raw_tasks = raw["tasks"]
        if not isinstance(raw_tasks, list):
            raise TaskFileError("tasks must be a list")
        tasks = [_parse_task(task, f"tasks[{i}]") for i, task in enumerate(raw_tasks)]
        return TaskSet(config=config, tasks=tasks)

    raw_groups = raw["groups"]
    if not isinstance(raw_groups, list) or not all(isinstance(g, list) for g in raw_groups):
        raise TaskFileError("groups must be a list of task lists")
    groups: list[list[TaskSpec]] = []
    for g_idx, raw_group in enumerate(raw_groups):
        if not raw_group:
            raise TaskFileError(f"groups[{g_idx}] must contain at least one task")
        groups.append(
            [_parse_task(task, f"groups[{g_idx}][{t_idx}]") for t_idx, task in enumerate(raw_group)]
        )
    return TaskSet(config=config, groups=groups)


def load_task_file(path: Path) -> TaskSet:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise TaskFileError(f"task file not found: {path}") from exc
    except UnicodeError as exc:
        raise TaskFileError(f"failed to decode task file as utf-8: {path}") from exc
    except OSError as exc:
        raise TaskFileError(f"failed to read task file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise TaskFileError(f"failed to parse yaml: {exc}") from exc
    return parse_task_set(raw)
