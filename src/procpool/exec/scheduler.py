from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import signal
from datetime import datetime
from typing import Any

from procpool.config.schema import LOG_LEVELS, SchedulerConfig, TaskSpec, resolve_signal
from procpool.events import EventSink
from procpool.exec.executor import SPAWN_FAILED_EXIT_CODE, ProcessHandle, launch
from procpool.exec.lanes import run_lanes
from procpool.exec.retry import RetryDecision, RetryPolicy
from procpool.exec.timeout import DeadlineTimer, resolve_timeout
from procpool.state.model import SchedulerState, StatusSnapshot, TaskOutcome
from procpool.util.errors import AlreadyRunningError, SchedulerError, SpawnError
from procpool.util.time import duration_sec, iso_ms, local_now

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class TaskScheduler:
    """Runs external processes on a fixed number of worker slots.

    Install work with :meth:`set_tasks` (flat pool) or
    :meth:`set_grouped_tasks` (one sequential lane per group), then await
    :meth:`start`. All state lives on the event loop that runs ``start``.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        events: EventSink | None = None,
        **overrides: Any,
    ) -> None:
        if config is None:
            config = SchedulerConfig(**overrides)
        elif overrides:
            config = dataclasses.replace(config, **overrides)
        self.config = config
        self.events = events if events is not None else EventSink()
        self.retry = RetryPolicy(config.max_retry, config.global_retry_limit, config.retry_delay)
        self.state = SchedulerState(threads=config.threads)
        self._handles: dict[int, ProcessHandle] = {}
        self._runs: set[asyncio.Task[TaskOutcome]] = set()
        self._processing = False
        self._paused = False
        self._generation = 0
        self._wake = asyncio.Event()

    # --- task registry ---

    def set_tasks(self, tasks: list[TaskSpec]) -> None:
        self._ensure_idle("set_tasks")
        self._generation += 1
        self.state.install(tasks)
        self._log("debug", "Tasks installed", {"total": len(tasks)})

    def set_grouped_tasks(self, groups: list[list[TaskSpec]]) -> None:
        self._ensure_idle("set_grouped_tasks")
        specs: list[TaskSpec] = []
        lanes: list[list[int]] = []
        for group in groups:
            lanes.append(list(range(len(specs), len(specs) + len(group))))
            specs.extend(group)
        self._generation += 1
        self.state.install(specs, lanes)
        self._log("debug", "Grouped tasks installed", {"lanes": len(lanes), "total": len(specs)})

    def get_tasks(self) -> list[TaskSpec | None]:
        if self.state.grouped:
            return []
        return list(self.state.specs)

    def get_grouped_tasks(self) -> list[list[TaskSpec | None]]:
        return [[self.state.specs[i] for i in lane] for lane in self.state.lanes]

    def cancel_task(self, index: int) -> bool:
        """Permanently skip a task that is not in flight. Returns False when refused."""
        state = self.state
        if not 0 <= index < state.total:
            raise IndexError(f"task index out of range: {index}")
        if index in state.in_flight:
            self._log("warn", "Cannot cancel running task, use stop_task", {"idx": index})
            return False
        state.specs[index] = None
        state.status[index] = "cancelled"
        self.retry.take_pending(state, index)
        state.completed.add(index)
        self._wake.set()
        self._log("info", "Cancel task", {"idx": index})
        return True

    # --- lifecycle ---

    async def start(self) -> None:
        if self._processing:
            self._log("warn", "Task manager is already running.")
            raise AlreadyRunningError("Task manager is already running.")
        self._processing = True
        self._paused = False
        try:
            await self.emit("before_start", self.get_tasks())
            await self.emit("after_start")
            if self.state.grouped:
                await run_lanes(self)
            else:
                await self._run_flat()
        except BaseException:
            self._processing = False
            raise

    async def pause(self) -> None:
        await self.emit("before_pause")
        self._paused = True
        self._log("info", "Pause")
        await self.emit("after_pause")

    async def resume(self) -> None:
        """Clear a pause; re-enter the flat loop if it exited while paused."""
        if not self._paused:
            self._log("warn", "Resume ignored, scheduler is not paused")
            return
        self._paused = False
        self._log("info", "Resume")
        if self._processing:
            self._wake.set()
            return
        if self.state.grouped:
            return
        self._processing = True
        try:
            await self._run_flat()
        except BaseException:
            self._processing = False
            raise

    async def stop(self, sig: str | int | signal.Signals | None = None) -> None:
        await self.emit("before_stop")
        self._processing = False
        self._paused = False
        kill_signal = self._signal(sig)
        state = self.state
        # in-flight covers tasks whose pre-run hook is still pending
        for index in state.in_flight.union(self._handles):
            if index < state.total and state.status[index] == "running":
                state.status[index] = "stopped"
        for handle in self._handles.values():
            handle.disarm()
            handle.kill(kill_signal)
        self._handles.clear()
        self._detach_runs()
        state.clear_tables()
        self._generation += 1
        self._wake.set()
        self._log("info", "Stop", {"signal": kill_signal.name})
        await self.emit("after_stop")

    async def stop_task(self, index: int, sig: str | int | signal.Signals | None = None) -> None:
        state = self.state
        task = state.specs[index] if 0 <= index < state.total else None
        await self.emit("before_stop_task", index, task)
        if 0 <= index < state.total:
            # status first so the close path sees a pre-empted task
            state.status[index] = "stopped"
            self.retry.take_pending(state, index)
            state.release(index)
            state.mark_completed(index)
        handle = self._handles.pop(index, None)
        if handle is not None:
            handle.disarm()
            handle.kill(self._signal(sig))
        self._wake.set()
        await self.emit("after_stop_task", index, task)
        await self.emit("on_stop_task", index, task)
        self._log("info", "Stop task", {"idx": index})

    async def destroy(self, sig: str | int | signal.Signals | None = None) -> None:
        await self.stop(sig)
        self._generation += 1
        self.state.clear_storage()
        self._log("info", "Destroy")
        await self.emit("on_destroy")

    # --- observability ---

    def status(self) -> StatusSnapshot:
        return self.state.snapshot()

    def outcomes(self) -> dict[int, TaskOutcome]:
        return {i: o for i, o in enumerate(self.state.outcomes) if o is not None}

    def get_processing(self) -> list[int]:
        return sorted(self.state.in_flight)

    def get_processed(self) -> list[int]:
        return sorted(self.state.completed)

    def get_threads(self) -> list[int | None]:
        return list(self.state.slots)

    def is_running(self) -> bool:
        return self._processing

    def is_paused(self) -> bool:
        return self._paused

    # --- flat mode ---

    async def _run_flat(self) -> None:
        state = self.state
        loop = asyncio.get_running_loop()
        # close hooks may still requeue a task after it was counted completed
        while self._processing and (not state.all_processed() or self._has_active_runs()):
            self._wake.clear()
            self._reap_runs()
            if self._paused:
                await self._sleep_tick()
                continue
            released = self.retry.release_expired(state, loop.time())
            if released:
                self._log("debug", "Retry eligible", {"idx": released})
            await self.emit(
                "on_tasks_running", self.get_processing(), self.get_processed(), self.get_threads()
            )
            for slot in state.idle_slots():
                if not self._processing or self._paused:
                    break
                index = state.next_eligible()
                if index is None:
                    break
                await self._dispatch(slot, index)
            await self._sleep_tick()

        if self._processing:
            self._reap_runs()
        await self.complete_run(state.total)

    async def _dispatch(self, slot: int, index: int) -> None:
        spec = self.state.specs[index]
        assert spec is not None
        self.state.occupy(slot, index)
        await self.emit("before_run_task", slot, index, spec)
        self._log("info", "Start task", {"idx": index, "slot": slot, "command": spec.command})
        run = asyncio.create_task(self.execute_task(index, slot, spec))
        run.add_done_callback(lambda _: self._wake.set())
        self._runs.add(run)

    def _has_active_runs(self) -> bool:
        return any(not run.done() for run in self._runs)

    def _reap_runs(self) -> None:
        for run in [r for r in self._runs if r.done()]:
            self._runs.discard(run)
            run.result()

    def _detach_runs(self) -> None:
        for run in self._runs:
            run.add_done_callback(_log_detached_failure)
        self._runs = set()

    async def _sleep_tick(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval)
        except TimeoutError:
            pass

    async def complete_run(self, total: int) -> None:
        self._processing = False
        self._log("info", "All tasks processed", {"total": total})
        await self.emit("on_all_done", total)

    # --- process executor ---

    async def execute_task(
        self,
        index: int,
        slot: int,
        spec: TaskSpec,
        *,
        sequential: bool = False,
        apply_policy: bool = True,
    ) -> TaskOutcome:
        """Run one task to completion: spawn, stream, enforce its deadline, settle status."""
        generation = self._generation
        started_dt = local_now()
        if index not in self.state.in_flight:
            # stopped while the pre-run hook was pending
            return self._record_outcome(index, slot, None, None, "", "", started_dt, -1)

        try:
            handle = await launch(
                index,
                slot,
                spec,
                on_stdout=lambda chunk: self.emit("on_task_stdout", slot, index, spec, chunk),
                on_stderr=lambda chunk: self.emit("on_task_stderr", slot, index, spec, chunk),
                generation=generation,
            )
        except SpawnError as exc:
            self._log("error", "Task spawn failed", {"idx": index, "error": str(exc)})
            tracked = self._settle_tables(index, generation, sequential)
            outcome = self._record_outcome(
                index,
                slot,
                None,
                SPAWN_FAILED_EXIT_CODE,
                "",
                f"{exc}\n",
                started_dt,
                generation,
                spawn_failed=True,
            )
            await self.emit("after_run_task", slot, index, spec, outcome)
            if tracked:
                self.state.status[index] = "failed"
                await self.emit(
                    "on_task_error", slot, index, spec, outcome.exit_code, None, outcome.stderr
                )
            return outcome

        self._handles[index] = handle
        if apply_policy:
            seconds = resolve_timeout(spec.timeout_sec, self.config.default_timeout)
            if seconds is not None:
                handle.deadline = DeadlineTimer(seconds, lambda: self._expire(handle))
                handle.deadline.arm()

        exit_code, signal_name = await handle.wait_closed()
        try:
            if handle.deadline is not None:
                await handle.deadline.settle()
        finally:
            outcome = await self._on_close(
                handle, exit_code, signal_name, started_dt, sequential, apply_policy
            )
        return outcome

    async def _expire(self, handle: ProcessHandle) -> None:
        index = handle.index
        if self._handles.get(index) is not handle:
            return
        handle.timed_out = True
        self.state.status[index] = "timeout"
        self._log("warn", "Task timeout", {"idx": index, "timeout_sec": handle.deadline.seconds})
        handle.kill(self.config.kill_signal)
        await self.emit("on_task_timeout", index, handle.spec)

    async def _on_close(
        self,
        handle: ProcessHandle,
        exit_code: int | None,
        signal_name: str | None,
        started_dt: datetime,
        sequential: bool,
        apply_policy: bool,
    ) -> TaskOutcome:
        index, slot, spec = handle.index, handle.slot, handle.spec
        handle.disarm()
        if self._handles.get(index) is handle:
            del self._handles[index]
        tracked = self._settle_tables(index, handle.generation, sequential)
        outcome = self._record_outcome(
            index,
            slot,
            handle.pid,
            exit_code,
            handle.stdout,
            handle.stderr,
            started_dt,
            handle.generation,
            signal_name=signal_name,
            timed_out=handle.timed_out,
        )
        await self.emit("after_run_task", slot, index, spec, outcome)
        if not tracked:
            return outcome

        state = self.state
        if outcome.succeeded:
            state.status[index] = "done"
            self._log("info", "Task done", {"idx": index})
            await self.emit("on_task_done", index, spec)
            return outcome

        if not handle.timed_out:
            state.status[index] = "failed"
        self._log(
            "warn", "Task failed", {"idx": index, "exit_code": exit_code, "signal": signal_name}
        )
        await self.emit("on_task_error", slot, index, spec, exit_code, signal_name, outcome.stderr)
        if apply_policy:
            await self._apply_retry(index)
        return outcome

    def _settle_tables(self, index: int, generation: int, sequential: bool) -> bool:
        """Move a closed task from in-flight to completed. False when it was pre-empted."""
        state = self.state
        self._wake.set()
        if generation != self._generation or index not in state.in_flight:
            return False
        if state.status[index] == "stopped":
            return False
        if not sequential:
            state.release(index)
        state.mark_completed(index)
        return True

    def _record_outcome(
        self,
        index: int,
        slot: int,
        pid: int | None,
        exit_code: int | None,
        stdout: str,
        stderr: str,
        started_dt: datetime,
        generation: int,
        *,
        signal_name: str | None = None,
        timed_out: bool = False,
        spawn_failed: bool = False,
    ) -> TaskOutcome:
        ended_dt = local_now()
        outcome = TaskOutcome(
            index=index,
            slot=slot,
            pid=pid,
            exit_code=exit_code,
            signal=signal_name,
            stdout=stdout,
            stderr=stderr,
            started_at=iso_ms(started_dt),
            ended_at=iso_ms(ended_dt),
            duration_sec=duration_sec(started_dt, ended_dt),
            timed_out=timed_out,
            spawn_failed=spawn_failed,
        )
        if generation == self._generation and index < len(self.state.outcomes):
            self.state.outcomes[index] = outcome
        return outcome

    # --- retry policy ---

    async def _apply_retry(self, index: int) -> None:
        state = self.state
        decision = self.retry.register_failure(state, index)
        if decision is RetryDecision.RETRY:
            retry_count = state.retry_count[index]
            self.retry.schedule(state, index, asyncio.get_running_loop().time())
            self._log("warn", "Retry task", {"idx": index, "retry": retry_count})
            await self.emit("on_task_retry", index, retry_count)
        elif decision is RetryDecision.HALT:
            self._processing = False
            self._wake.set()
            self._log(
                "error",
                "Global retry limit reached, stopping all tasks",
                {"global_retry_count": state.global_retry_count},
            )
        else:
            self._log("error", "Task failed after max retry", {"idx": index})

    # --- plumbing ---

    async def emit(self, hook: str, *args: Any) -> None:
        result = getattr(self.events, hook)(*args)
        if inspect.isawaitable(result):
            await result

    def _log(self, level: str, message: str, data: Any = None) -> None:
        if data is None:
            logger.log(_PY_LEVELS[level], message)
        else:
            logger.log(_PY_LEVELS[level], "%s %s", message, data)
        if LOG_LEVELS[level] >= LOG_LEVELS[self.config.log_level]:
            self.events.on_log(f"[{level.upper()}] {message}", data)

    def _signal(self, sig: str | int | signal.Signals | None) -> signal.Signals:
        return resolve_signal(sig if sig is not None else self.config.kill_signal)

    def _ensure_idle(self, operation: str) -> None:
        if self._processing:
            raise SchedulerError(f"{operation} is not allowed while the scheduler is running")


def _log_detached_failure(run: asyncio.Task[TaskOutcome]) -> None:
    if run.cancelled():
        return
    exc = run.exception()
    if exc is not None:
        logger.error("Task run failed after scheduler stop", exc_info=exc)
