from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable


def resolve_timeout(override: float | None, default: float | None) -> float | None:
    return override if override is not None else default


class DeadlineTimer:
    """Runs ``on_expire`` once ``seconds`` have elapsed unless disarmed first.

    Once the expiry callback has started it is allowed to finish; disarming
    afterwards is a no-op. :meth:`settle` waits for that callback and
    re-raises whatever it raised.
    """

    def __init__(self, seconds: float, on_expire: Callable[[], Awaitable[None]]) -> None:
        self.seconds = seconds
        self._on_expire = on_expire
        self._task: asyncio.Task[None] | None = None
        self.fired = False

    def arm(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._wait())

    def disarm(self) -> None:
        if self._task is not None and not self.fired:
            self._task.cancel()
            self._task = None

    async def settle(self) -> None:
        if self._task is not None and self.fired:
            await self._task

    async def _wait(self) -> None:
        await asyncio.sleep(self.seconds)
        self.fired = True
        await self._on_expire()
