from __future__ import annotations

from enum import Enum

from procpool.state.model import PendingRetry, SchedulerState


class RetryDecision(Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"
    HALT = "halt"


class RetryPolicy:
    """Per-task retry limit plus a scheduler-wide retry budget.

    ``retry_count[i]`` counts retries granted to task ``i`` and
    ``global_retry_count`` counts retries requested across all tasks, so a
    task that fails ``max_retry + 1`` times adds exactly ``max_retry`` to the
    global counter.
    """

    def __init__(self, max_retry: int, global_retry_limit: int, retry_delay: float) -> None:
        self.max_retry = max_retry
        self.global_retry_limit = global_retry_limit
        self.retry_delay = retry_delay

    def register_failure(self, state: SchedulerState, index: int) -> RetryDecision:
        if state.retry_count[index] >= self.max_retry:
            return RetryDecision.GIVE_UP
        state.global_retry_count += 1
        if state.global_retry_count > self.global_retry_limit:
            return RetryDecision.HALT
        state.retry_count[index] += 1
        return RetryDecision.RETRY

    def schedule(self, state: SchedulerState, index: int, now: float) -> PendingRetry:
        """Undo the optimistic completion and park the task until its delay passes."""
        state.completed.discard(index)
        pending = PendingRetry(index=index, eligible_at=now + self.retry_delay)
        state.pending_retries.append(pending)
        return pending

    def release_expired(self, state: SchedulerState, now: float) -> list[int]:
        released: list[int] = []
        remaining: list[PendingRetry] = []
        for pending in state.pending_retries:
            if pending.eligible_at <= now:
                released.append(pending.index)
            else:
                remaining.append(pending)
        state.pending_retries[:] = remaining
        for index in released:
            if state.status[index] != "cancelled":
                state.status[index] = "waiting"
        return released

    def take_pending(self, state: SchedulerState, index: int) -> PendingRetry | None:
        for pos, pending in enumerate(state.pending_retries):
            if pending.index == index:
                return state.pending_retries.pop(pos)
        return None
