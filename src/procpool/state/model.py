from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from procpool.config.schema import TaskSpec

TaskStatus = Literal["waiting", "running", "done", "failed", "timeout", "cancelled", "stopped"]


@dataclass(slots=True)
class TaskOutcome:
    index: int
    slot: int
    pid: int | None
    exit_code: int | None
    signal: str | None
    stdout: str
    stderr: str
    started_at: str
    ended_at: str
    duration_sec: float
    timed_out: bool = False
    spawn_failed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "slot": self.slot,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "timed_out": self.timed_out,
            "spawn_failed": self.spawn_failed,
        }


@dataclass(slots=True)
class PendingRetry:
    index: int
    eligible_at: float


@dataclass(slots=True)
class StatusSnapshot:
    total: int
    running: int
    done: int
    waiting: int
    retry_count: dict[int, int]
    global_retry_count: int
    task_status: dict[int, TaskStatus]

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "running": self.running,
            "done": self.done,
            "waiting": self.waiting,
            "retry_count": dict(self.retry_count),
            "global_retry_count": self.global_retry_count,
            "task_status": dict(self.task_status),
        }


@dataclass(slots=True)
class SchedulerState:
    """Every mutable table of one scheduler instance, addressed by task index.

    Grouped tasks are flattened: lane ``g`` owns the indices listed in
    ``lanes[g]`` in execution order.
    """

    threads: int
    specs: list[TaskSpec | None] = field(default_factory=list)
    lanes: list[list[int]] = field(default_factory=list)
    status: list[TaskStatus] = field(default_factory=list)
    slots: list[int | None] = field(default_factory=list)
    in_flight: set[int] = field(default_factory=set)
    completed: set[int] = field(default_factory=set)
    retry_count: list[int] = field(default_factory=list)
    global_retry_count: int = 0
    pending_retries: list[PendingRetry] = field(default_factory=list)
    outcomes: list[TaskOutcome | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.slots = [None] * self.threads

    @property
    def total(self) -> int:
        return len(self.specs)

    @property
    def grouped(self) -> bool:
        return bool(self.lanes)

    def install(self, specs: list[TaskSpec], lanes: list[list[int]] | None = None) -> None:
        self.specs = list(specs)
        self.lanes = [list(lane) for lane in lanes] if lanes else []
        self.status = ["waiting"] * len(specs)
        self.retry_count = [0] * len(specs)
        self.outcomes = [None] * len(specs)
        self.global_retry_count = 0
        self.clear_tables()

    def clear_tables(self) -> None:
        self.slots = [None] * self.threads
        self.in_flight.clear()
        self.completed.clear()
        self.pending_retries.clear()
        # cancelled tasks stay settled across stop/start
        self.completed.update(i for i, spec in enumerate(self.specs) if spec is None)

    def clear_storage(self) -> None:
        self.install([])

    def is_eligible(self, index: int) -> bool:
        return (
            self.specs[index] is not None
            and index not in self.in_flight
            and index not in self.completed
            and self.status[index] != "cancelled"
            and not any(p.index == index for p in self.pending_retries)
        )

    def next_eligible(self) -> int | None:
        for index in range(self.total):
            if self.is_eligible(index):
                return index
        return None

    def idle_slots(self) -> list[int]:
        return [slot for slot, occupant in enumerate(self.slots) if occupant is None]

    def begin(self, index: int) -> None:
        self.completed.discard(index)
        self.in_flight.add(index)
        self.status[index] = "running"

    def occupy(self, slot: int, index: int) -> None:
        self.slots[slot] = index
        self.begin(index)

    def release(self, index: int) -> None:
        for slot, occupant in enumerate(self.slots):
            if occupant == index:
                self.slots[slot] = None

    def mark_completed(self, index: int) -> None:
        self.in_flight.discard(index)
        self.completed.add(index)

    def all_processed(self) -> bool:
        return len(self.completed) >= self.total

    def snapshot(self) -> StatusSnapshot:
        running = len(self.in_flight)
        done = len(self.completed)
        return StatusSnapshot(
            total=self.total,
            running=running,
            done=done,
            waiting=max(0, self.total - running - done),
            retry_count={i: n for i, n in enumerate(self.retry_count) if n},
            global_retry_count=self.global_retry_count,
            task_status=dict(enumerate(self.status)),
        )
