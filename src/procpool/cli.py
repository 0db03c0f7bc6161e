from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from procpool.config.loader import load_task_file
from procpool.config.schema import TaskSet, TaskSpec
from procpool.events import EventSink
from procpool.exec.scheduler import TaskScheduler
from procpool.report.render_md import render_markdown
from procpool.report.summarize import build_summary
from procpool.util.errors import ConfigError, TaskFileError

app = typer.Typer(help="Run external processes on a bounded worker pool")
console = Console()


class ConsoleSink(EventSink):
    """Streams task output and log lines to the terminal."""

    def __init__(self, out: Console, *, quiet: bool = False) -> None:
        self.out = out
        self.quiet = quiet

    def _emit_lines(self, index: int, data: bytes, style: str) -> None:
        if self.quiet:
            return
        for line in data.decode("utf-8", errors="replace").splitlines():
            self.out.print(Text.assemble((f"[{index}] ", style), line), highlight=False)

    def on_task_stdout(self, slot: int, index: int, task: TaskSpec, data: bytes) -> None:
        self._emit_lines(index, data, "cyan")

    def on_task_stderr(self, slot: int, index: int, task: TaskSpec, data: bytes) -> None:
        self._emit_lines(index, data, "red")

    def on_log(self, message: str, data: Any = None) -> None:
        if self.quiet:
            return
        suffix = "" if data is None else f" {data}"
        self.out.print(Text(f"{message}{suffix}", style="dim"), highlight=False)


def _exit_code_for(scheduler: TaskScheduler) -> int:
    snapshot = scheduler.status()
    if all(status == "done" for status in snapshot.task_status.values()):
        return 0
    return 3


def _all_specs(task_set: TaskSet) -> list[TaskSpec]:
    if task_set.grouped:
        return [spec for group in task_set.groups for spec in group]
    return list(task_set.tasks)


async def run_task_set(task_set: TaskSet, scheduler: TaskScheduler) -> None:
    if task_set.grouped:
        scheduler.set_grouped_tasks(task_set.groups)
    else:
        scheduler.set_tasks(task_set.tasks)
    try:
        await scheduler.start()
    except asyncio.CancelledError:
        await scheduler.stop()
        raise


def _render_status_table(scheduler: TaskScheduler, specs: list[TaskSpec]) -> Table:
    snapshot = scheduler.status()
    outcomes = scheduler.outcomes()
    table = Table(title="Task Status")
    table.add_column("#", justify="right")
    table.add_column("command")
    table.add_column("status")
    table.add_column("retries", justify="right")
    table.add_column("exit_code", justify="right")
    table.add_column("duration_sec", justify="right")
    for index, status in snapshot.task_status.items():
        outcome = outcomes.get(index)
        table.add_row(
            str(index),
            " ".join(specs[index].argv),
            status,
            str(snapshot.retry_count.get(index, 0)),
            "-" if outcome is None or outcome.exit_code is None else str(outcome.exit_code),
            "-" if outcome is None else str(outcome.duration_sec),
        )
    return table


@app.command()
def run(
    task_file: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    threads: Annotated[int | None, typer.Option("--threads", min=1)] = None,
    max_retry: Annotated[int | None, typer.Option("--max-retry", min=0)] = None,
    timeout: Annotated[float | None, typer.Option("--timeout")] = None,
    retry_delay: Annotated[float | None, typer.Option("--retry-delay", min=0)] = None,
    global_retry_limit: Annotated[int | None, typer.Option("--global-retry-limit", min=0)] = None,
    poll_interval: Annotated[float | None, typer.Option("--poll-interval")] = None,
    kill_signal: Annotated[str | None, typer.Option("--kill-signal")] = None,
    log_level: Annotated[str | None, typer.Option("--log-level")] = None,
    lane_policy: Annotated[bool, typer.Option("--lane-policy")] = False,
    as_json: Annotated[bool, typer.Option("--json")] = False,
    report: Annotated[Path | None, typer.Option("--report")] = None,
    quiet: Annotated[bool, typer.Option("--quiet")] = False,
) -> None:
    try:
        task_set = load_task_file(task_file)
    except TaskFileError as exc:
        console.print(f"[red]Task file error:[/red] {exc}")
        raise typer.Exit(2) from exc

    overrides: dict[str, Any] = {
        "threads": threads,
        "max_retry": max_retry,
        "default_timeout": timeout,
        "retry_delay": retry_delay,
        "global_retry_limit": global_retry_limit,
        "poll_interval": poll_interval,
        "kill_signal": kill_signal,
        "log_level": log_level,
        "lane_policy": lane_policy or None,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    try:
        config = dataclasses.replace(task_set.config, **overrides)
    except ConfigError as exc:
        console.print(f"[red]Invalid settings:[/red] {exc}")
        raise typer.Exit(2) from exc

    quiet_output = quiet or as_json
    scheduler = TaskScheduler(config, ConsoleSink(console, quiet=quiet_output))
    asyncio.run(run_task_set(task_set, scheduler))

    specs = _all_specs(task_set)
    if report is not None:
        summary = build_summary(scheduler.status(), scheduler.outcomes(), specs)
        try:
            report.parent.mkdir(parents=True, exist_ok=True)
            report.write_text(render_markdown(summary) + "\n", encoding="utf-8")
        except OSError as exc:
            console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")

    if as_json:
        payload = {
            "status": scheduler.status().to_dict(),
            "outcomes": {i: o.to_dict() for i, o in scheduler.outcomes().items()},
        }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        console.print(_render_status_table(scheduler, specs))
    raise typer.Exit(_exit_code_for(scheduler))


@app.command()
def check(
    task_file: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
) -> None:
    try:
        task_set = load_task_file(task_file)
    except TaskFileError as exc:
        console.print(f"[red]Task file error:[/red] {exc}")
        raise typer.Exit(2) from exc

    if task_set.grouped:
        table = Table(title=f"Lanes ({len(task_set.groups)})")
        table.add_column("lane", justify="right")
        table.add_column("step", justify="right")
        table.add_column("command")
        for lane, group in enumerate(task_set.groups):
            for step, spec in enumerate(group, start=1):
                table.add_row(str(lane), str(step), " ".join(spec.argv))
    else:
        table = Table(title=f"Dispatch Order (threads={task_set.config.threads})")
        table.add_column("#", justify="right")
        table.add_column("command")
        table.add_column("timeout_sec", justify="right")
        for index, spec in enumerate(task_set.tasks):
            timeout = spec.timeout_sec or task_set.config.default_timeout
            table.add_row(str(index), " ".join(spec.argv), "-" if timeout is None else str(timeout))
    console.print(table)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    app()
