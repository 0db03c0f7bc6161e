from __future__ import annotations

import asyncio
import io
import sys

from rich.console import Console

from procpool.cli import ConsoleSink, _all_specs, _exit_code_for, run_task_set
from procpool.config.schema import SchedulerConfig, TaskSet, TaskSpec
from procpool.exec.scheduler import TaskScheduler


def _console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=120, color_system=None), buffer


def test_console_sink_prefixes_each_output_line() -> None:
    out, buffer = _console()
    sink = ConsoleSink(out)
    spec = TaskSpec(command="echo")

    sink.on_task_stdout(0, 3, spec, b"one\ntwo\n")
    sink.on_task_stderr(0, 3, spec, b"oops\n")
    sink.on_log("[INFO] Task done", {"idx": 3})

    lines = buffer.getvalue().splitlines()
    assert lines == ["[3] one", "[3] two", "[3] oops", "[INFO] Task done {'idx': 3}"]


def test_console_sink_quiet_prints_nothing() -> None:
    out, buffer = _console()
    sink = ConsoleSink(out, quiet=True)

    sink.on_task_stdout(0, 0, TaskSpec(command="echo"), b"hidden\n")
    sink.on_log("[WARN] hidden")

    assert buffer.getvalue() == ""


def test_all_specs_flattens_groups_in_lane_order() -> None:
    a, b, c = (TaskSpec(command="echo", args=(name,)) for name in "abc")
    grouped = TaskSet(config=SchedulerConfig(), groups=[[a, b], [c]])
    flat = TaskSet(config=SchedulerConfig(), tasks=[c, a])

    assert _all_specs(grouped) == [a, b, c]
    assert _all_specs(flat) == [c, a]


def test_run_task_set_installs_tasks_and_sets_exit_code() -> None:
    out, _ = _console()
    config = SchedulerConfig(poll_interval=0.02)
    ok = TaskSpec(command=sys.executable, args=("-c", "print(1)"))
    bad = TaskSpec(command=sys.executable, args=("-c", "raise SystemExit(2)"))

    scheduler = TaskScheduler(config, ConsoleSink(out, quiet=True))
    asyncio.run(run_task_set(TaskSet(config=config, tasks=[ok]), scheduler))
    assert _exit_code_for(scheduler) == 0

    scheduler = TaskScheduler(config, ConsoleSink(out, quiet=True))
    asyncio.run(run_task_set(TaskSet(config=config, groups=[[ok, bad]]), scheduler))
    assert scheduler.status().task_status == {0: "done", 1: "failed"}
    assert _exit_code_for(scheduler) == 3
