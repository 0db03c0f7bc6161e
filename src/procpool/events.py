"""Lifecycle hooks delivered by the scheduler.

Subclass :class:`EventSink` and override the events you care about. Every
method may be a plain function or a coroutine function; the scheduler awaits
awaitable results before it continues. ``on_log`` is the exception: it is
called synchronously and its return value is ignored.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

from procpool.config.schema import TaskSpec
from procpool.state.model import TaskOutcome

HookResult = Awaitable[None] | None


class EventSink:
    def before_start(self, tasks: list[TaskSpec | None]) -> HookResult:
        return None

    def after_start(self) -> HookResult:
        return None

    def before_stop(self) -> HookResult:
        return None

    def after_stop(self) -> HookResult:
        return None

    def before_pause(self) -> HookResult:
        return None

    def after_pause(self) -> HookResult:
        return None

    def before_run_task(self, slot: int, index: int, task: TaskSpec) -> HookResult:
        return None

    def after_run_task(
        self, slot: int, index: int, task: TaskSpec, outcome: TaskOutcome
    ) -> HookResult:
        return None

    def before_stop_task(self, index: int, task: TaskSpec | None) -> HookResult:
        return None

    def after_stop_task(self, index: int, task: TaskSpec | None) -> HookResult:
        return None

    def on_stop_task(self, index: int, task: TaskSpec | None) -> HookResult:
        return None

    def on_task_stdout(self, slot: int, index: int, task: TaskSpec, data: bytes) -> HookResult:
        return None

    def on_task_stderr(self, slot: int, index: int, task: TaskSpec, data: bytes) -> HookResult:
        return None

    def on_tasks_running(
        self, processing: list[int], processed: list[int], threads: list[int | None]
    ) -> HookResult:
        return None

    def on_all_done(self, total: int) -> HookResult:
        return None

    def on_destroy(self) -> HookResult:
        return None

    def on_task_error(
        self,
        slot: int,
        index: int,
        task: TaskSpec,
        exit_code: int | None,
        signal: str | None,
        stderr: str,
    ) -> HookResult:
        return None

    def on_log(self, message: str, data: Any = None) -> None:
        return None

    def on_task_timeout(self, index: int, task: TaskSpec) -> HookResult:
        return None

    def on_task_retry(self, index: int, retry_count: int) -> HookResult:
        return None

    def on_task_done(self, index: int, task: TaskSpec) -> HookResult:
        return None

    def on_group_done(self, lane: int, group: list[TaskSpec | None]) -> HookResult:
        return None


@dataclass(slots=True)
class Event:
    name: str
    args: tuple[Any, ...]


class EventRecorder(EventSink):
    """Sink that keeps every event as a tagged record for later draining."""

    def __init__(self, *, chunks: bool = True) -> None:
        self.events: list[Event] = []
        self._chunks = chunks

    def _record(self, name: str, *args: Any) -> None:
        self.events.append(Event(name, args))

    def drain(self) -> list[Event]:
        drained = self.events
        self.events = []
        return drained

    def named(self, name: str) -> list[Event]:
        return [event for event in self.events if event.name == name]

    def before_start(self, tasks: list[TaskSpec | None]) -> None:
        self._record("before_start", len(tasks))

    def after_start(self) -> None:
        self._record("after_start")

    def before_stop(self) -> None:
        self._record("before_stop")

    def after_stop(self) -> None:
        self._record("after_stop")

    def before_pause(self) -> None:
        self._record("before_pause")

    def after_pause(self) -> None:
        self._record("after_pause")

    def before_run_task(self, slot: int, index: int, task: TaskSpec) -> None:
        self._record("before_run_task", slot, index)

    def after_run_task(self, slot: int, index: int, task: TaskSpec, outcome: TaskOutcome) -> None:
        self._record("after_run_task", slot, index, outcome)

    def before_stop_task(self, index: int, task: TaskSpec | None) -> None:
        self._record("before_stop_task", index)

    def after_stop_task(self, index: int, task: TaskSpec | None) -> None:
        self._record("after_stop_task", index)

    def on_stop_task(self, index: int, task: TaskSpec | None) -> None:
        self._record("on_stop_task", index)

    def on_task_stdout(self, slot: int, index: int, task: TaskSpec, data: bytes) -> None:
        if self._chunks:
            self._record("on_task_stdout", slot, index, data)

    def on_task_stderr(self, slot: int, index: int, task: TaskSpec, data: bytes) -> None:
        if self._chunks:
            self._record("on_task_stderr", slot, index, data)

    def on_tasks_running(
        self, processing: list[int], processed: list[int], threads: list[int | None]
    ) -> None:
        self._record("on_tasks_running", processing, processed, threads)

    def on_all_done(self, total: int) -> None:
        self._record("on_all_done", total)

    def on_destroy(self) -> None:
        self._record("on_destroy")

    def on_task_error(
        self,
        slot: int,
        index: int,
        task: TaskSpec,
        exit_code: int | None,
        signal: str | None,
        stderr: str,
    ) -> None:
        self._record("on_task_error", slot, index, exit_code, signal, stderr)

    def on_log(self, message: str, data: Any = None) -> None:
        self._record("on_log", message, data)

    def on_task_timeout(self, index: int, task: TaskSpec) -> None:
        self._record("on_task_timeout", index)

    def on_task_retry(self, index: int, retry_count: int) -> None:
        self._record("on_task_retry", index, retry_count)

    def on_task_done(self, index: int, task: TaskSpec) -> None:
        self._record("on_task_done", index)

    def on_group_done(self, lane: int, group: list[TaskSpec | None]) -> None:
        self._record("on_group_done", lane, len(group))
