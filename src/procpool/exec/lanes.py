"""Grouped mode: one sequential lane per task group, all lanes concurrent."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from procpool.exec.scheduler import TaskScheduler


async def run_lane(scheduler: TaskScheduler, lane: int) -> None:
    state = scheduler.state
    indices = list(state.lanes[lane])
    group = [state.specs[i] for i in indices]
    apply_policy = scheduler.config.lane_policy
    loop = asyncio.get_running_loop()

    for index in indices:
        while scheduler.is_running():
            spec = state.specs[index]
            if spec is None or index in state.completed:
                break
            state.begin(index)
            await scheduler.emit("before_run_task", lane, index, spec)
            await scheduler.execute_task(
                index, lane, spec, sequential=True, apply_policy=apply_policy
            )
            pending = scheduler.retry.take_pending(state, index)
            if pending is None:
                break
            await asyncio.sleep(max(0.0, pending.eligible_at - loop.time()))
            state.status[index] = "waiting"
        if not scheduler.is_running():
            break

    await scheduler.emit("on_group_done", lane, group)


async def run_lanes(scheduler: TaskScheduler) -> None:
    lane_count = len(scheduler.state.lanes)
    await asyncio.gather(*(run_lane(scheduler, lane) for lane in range(lane_count)))
    await scheduler.complete_run(lane_count)
