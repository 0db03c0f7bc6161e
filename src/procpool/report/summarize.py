from __future__ import annotations

from procpool.config.schema import TaskSpec
from procpool.state.model import StatusSnapshot, TaskOutcome
from procpool.util.time import iso_ms, local_now

_PROBLEM_STATUSES = {"failed", "timeout", "cancelled", "stopped"}


def _tail(text: str, n: int) -> list[str]:
    if n <= 0:
        return []
    return text.splitlines()[-n:]


def build_summary(
    snapshot: StatusSnapshot,
    outcomes: dict[int, TaskOutcome],
    tasks: list[TaskSpec | None],
    *,
    tail: int = 50,
) -> dict[str, object]:
    task_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for index, status in snapshot.task_status.items():
        spec = tasks[index] if index < len(tasks) else None
        outcome = outcomes.get(index)
        command = " ".join(spec.argv) if spec is not None else "(cancelled)"
        task_rows.append(
            {
                "index": index,
                "command": command,
                "status": status,
                "retries": snapshot.retry_count.get(index, 0),
                "exit_code": outcome.exit_code if outcome else None,
                "signal": outcome.signal if outcome else None,
                "duration_sec": outcome.duration_sec if outcome else None,
                "timed_out": outcome.timed_out if outcome else False,
            }
        )
        if status in _PROBLEM_STATUSES:
            problem_rows.append(
                {
                    "index": index,
                    "status": status,
                    "stderr_tail": _tail(outcome.stderr, tail) if outcome else [],
                }
            )

    return {
        "run": {
            "generated_at": iso_ms(local_now()),
            "total": snapshot.total,
            "done": snapshot.done,
            "running": snapshot.running,
            "waiting": snapshot.waiting,
            "global_retry_count": snapshot.global_retry_count,
            "succeeded": sum(1 for s in snapshot.task_status.values() if s == "done"),
        },
        "tasks": task_rows,
        "problems": problem_rows,
    }
