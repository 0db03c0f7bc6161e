from __future__ import annotations

import signal
from pathlib import Path

import pytest

from procpool.config.loader import load_task_file, normalize_args, parse_task_set
from procpool.config.schema import SchedulerConfig, resolve_signal
from procpool.util.errors import ConfigError, TaskFileError


def _write(path: Path, content: str) -> Path:
    path.write_text(content.strip() + "\n", encoding="utf-8")
    return path


def test_load_flat_task_file_with_settings(tmp_path: Path) -> None:
    task_file = _write(
        tmp_path / "tasks.yaml",
        """
settings:
  threads: 3
  max_retry: 2
  retry_delay: 0.5
  kill_signal: KILL
tasks:
  - command: python
    args: "-c 'print(1)'"
    timeout_sec: 5
  - command: echo
    args: ["a", "b"]
    env:
      FOO: bar
    meta:
      label: second
""",
    )

    task_set = load_task_file(task_file)

    assert task_set.grouped is False
    assert task_set.config.threads == 3
    assert task_set.config.max_retry == 2
    assert task_set.config.kill_signal is signal.SIGKILL
    assert task_set.tasks[0].argv == ["python", "-c", "print(1)"]
    assert task_set.tasks[0].timeout_sec == 5.0
    assert task_set.tasks[1].env == {"FOO": "bar"}
    assert task_set.tasks[1].meta == {"label": "second"}


def test_load_grouped_task_file(tmp_path: Path) -> None:
    task_file = _write(
        tmp_path / "groups.yaml",
        """
groups:
  - - command: echo
      args: [a]
    - command: echo
      args: [b]
  - - command: echo
      args: [c]
""",
    )

    task_set = load_task_file(task_file)

    assert task_set.grouped is True
    assert task_set.tasks == []
    assert [[spec.args for spec in group] for group in task_set.groups] == [
        [("a",), ("b",)],
        [("c",)],
    ]
    assert task_set.config == SchedulerConfig()


@pytest.mark.parametrize(
    "raw",
    [
        {"settings": {"threads": 1}},
        {"tasks": [], "groups": []},
        {"tasks": "echo"},
        {"groups": [[]]},
        {"groups": [{"command": "echo"}]},
        {"tasks": [{"command": ""}]},
        {"tasks": [{"command": "echo", "unknown": 1}]},
        {"tasks": [{"command": "echo", "timeout_sec": 0}]},
        {"tasks": [{"command": "echo", "env": {"A=B": "x"}}]},
        {"tasks": [{"command": "echo", "merge_stderr": "yes"}]},
        {"tasks": [], "extra": True},
        {"settings": {"threads": 0}, "tasks": []},
        {"settings": {"bogus": 1}, "tasks": []},
        {"settings": {"kill_signal": "SIGNOPE"}, "tasks": []},
        ["tasks"],
    ],
)
def test_parse_task_set_rejects_invalid_documents(raw: object) -> None:
    with pytest.raises(TaskFileError):
        parse_task_set(raw)


def test_load_task_file_reports_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(TaskFileError, match="not found"):
        load_task_file(tmp_path / "missing.yaml")

    broken = _write(tmp_path / "broken.yaml", "tasks: [command: echo")
    with pytest.raises(TaskFileError, match="yaml"):
        load_task_file(broken)


def test_normalize_args_accepts_string_and_list() -> None:
    assert normalize_args(None) == ()
    assert normalize_args("-c 'print(1)'") == ("-c", "print(1)")
    assert normalize_args(["a b", "c"]) == ("a b", "c")
    with pytest.raises(TaskFileError):
        normalize_args("'unterminated")
    with pytest.raises(TaskFileError):
        normalize_args(["ok", 3])  # type: ignore[list-item]


def test_scheduler_config_defaults() -> None:
    config = SchedulerConfig()

    assert config.threads == 1
    assert config.poll_interval == 0.1
    assert config.max_retry == 0
    assert config.default_timeout == 600.0
    assert config.kill_signal is signal.SIGTERM
    assert config.global_retry_limit == 100
    assert config.retry_delay == 1.0
    assert config.log_level == "info"
    assert config.lane_policy is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"threads": 0},
        {"threads": True},
        {"poll_interval": 0},
        {"max_retry": -1},
        {"global_retry_limit": -1},
        {"retry_delay": float("nan")},
        {"default_timeout": 0},
        {"log_level": "verbose"},
        {"kill_signal": 3.5},
    ],
)
def test_scheduler_config_rejects_invalid_values(overrides: dict[str, object]) -> None:
    with pytest.raises(ConfigError):
        SchedulerConfig(**overrides)  # type: ignore[arg-type]


def test_scheduler_config_allows_disabling_default_timeout() -> None:
    assert SchedulerConfig(default_timeout=None).default_timeout is None


def test_resolve_signal_accepts_names_and_numbers() -> None:
    assert resolve_signal("SIGINT") is signal.SIGINT
    assert resolve_signal("term") is signal.SIGTERM
    assert resolve_signal(int(signal.SIGKILL)) is signal.SIGKILL
    assert resolve_signal(signal.SIGHUP) is signal.SIGHUP
    with pytest.raises(ConfigError):
        resolve_signal(99999)
