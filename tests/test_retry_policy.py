from __future__ import annotations

from procpool.config.schema import TaskSpec
from procpool.exec.retry import RetryDecision, RetryPolicy
from procpool.state.model import SchedulerState


def _state(total: int = 2, threads: int = 1) -> SchedulerState:
    state = SchedulerState(threads=threads)
    state.install([TaskSpec(command="true") for _ in range(total)])
    return state


def test_register_failure_grants_retries_until_max() -> None:
    state = _state()
    policy = RetryPolicy(max_retry=2, global_retry_limit=10, retry_delay=0.5)

    assert policy.register_failure(state, 0) is RetryDecision.RETRY
    assert policy.register_failure(state, 0) is RetryDecision.RETRY
    assert policy.register_failure(state, 0) is RetryDecision.GIVE_UP

    assert state.retry_count == [2, 0]
    assert state.global_retry_count == 2


def test_zero_max_retry_never_touches_global_counter() -> None:
    state = _state()
    policy = RetryPolicy(max_retry=0, global_retry_limit=0, retry_delay=0.0)

    assert policy.register_failure(state, 1) is RetryDecision.GIVE_UP
    assert state.global_retry_count == 0


def test_global_limit_exceeded_halts_without_granting_retry() -> None:
    state = _state()
    policy = RetryPolicy(max_retry=5, global_retry_limit=1, retry_delay=0.0)

    assert policy.register_failure(state, 0) is RetryDecision.RETRY
    assert policy.register_failure(state, 1) is RetryDecision.HALT

    assert state.global_retry_count == 2
    assert state.retry_count == [1, 0]


def test_schedule_parks_task_until_delay_passes() -> None:
    state = _state()
    policy = RetryPolicy(max_retry=1, global_retry_limit=10, retry_delay=2.0)
    state.occupy(0, 0)
    state.status[0] = "failed"
    state.release(0)
    state.mark_completed(0)

    pending = policy.schedule(state, 0, now=100.0)

    assert pending.eligible_at == 102.0
    assert 0 not in state.completed
    assert state.is_eligible(0) is False
    assert state.next_eligible() == 1

    assert policy.release_expired(state, now=101.0) == []
    assert policy.release_expired(state, now=102.0) == [0]
    assert state.status[0] == "waiting"
    assert state.pending_retries == []
    assert state.next_eligible() == 0


def test_release_expired_keeps_cancelled_status() -> None:
    state = _state()
    policy = RetryPolicy(max_retry=1, global_retry_limit=10, retry_delay=0.0)
    policy.schedule(state, 0, now=0.0)
    state.status[0] = "cancelled"

    assert policy.release_expired(state, now=1.0) == [0]
    assert state.status[0] == "cancelled"


def test_take_pending_removes_only_the_matching_entry() -> None:
    state = _state(total=3)
    policy = RetryPolicy(max_retry=1, global_retry_limit=10, retry_delay=1.0)
    policy.schedule(state, 0, now=0.0)
    policy.schedule(state, 2, now=0.0)

    taken = policy.take_pending(state, 2)

    assert taken is not None and taken.index == 2
    assert [p.index for p in state.pending_retries] == [0]
    assert policy.take_pending(state, 1) is None
