from __future__ import annotations

import asyncio
import os
import signal
from contextlib import suppress
from dataclasses import dataclass, field

from procpool.config.schema import TaskSpec
from procpool.exec.capture import ChunkCallback, decode_chunks, pump_stream
from procpool.exec.timeout import DeadlineTimer
from procpool.util.errors import SpawnError

SPAWN_FAILED_EXIT_CODE = 127


@dataclass(slots=True)
class ProcessHandle:
    index: int
    slot: int
    spec: TaskSpec
    process: asyncio.subprocess.Process
    generation: int = 0
    stdout_chunks: list[bytes] = field(default_factory=list)
    stderr_chunks: list[bytes] = field(default_factory=list)
    pumps: list[asyncio.Task[None]] = field(default_factory=list)
    deadline: DeadlineTimer | None = None
    timed_out: bool = False

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def stdout(self) -> str:
        return decode_chunks(self.stdout_chunks, self.spec.encoding)

    @property
    def stderr(self) -> str:
        return decode_chunks(self.stderr_chunks, self.spec.encoding)

    def disarm(self) -> None:
        if self.deadline is not None:
            self.deadline.disarm()

    def kill(self, sig: signal.Signals) -> None:
        if self.process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            self.process.send_signal(sig)

    async def wait_closed(self) -> tuple[int | None, str | None]:
        """Wait for exit and for both output streams to drain.

        Returns ``(exit_code, signal_name)``; exactly one of them is set.
        """
        returncode = await self.process.wait()
        await asyncio.gather(*self.pumps)
        if returncode < 0:
            try:
                return None, signal.Signals(-returncode).name
            except ValueError:
                return None, f"SIG{-returncode}"
        return returncode, None


def _merged_env(spec: TaskSpec) -> dict[str, str]:
    merged_env = os.environ.copy()
    if spec.env:
        merged_env.update(spec.env)
    return merged_env


async def _feed_stdin(process: asyncio.subprocess.Process, text: str, encoding: str) -> None:
    if process.stdin is None:
        return
    with suppress(BrokenPipeError, ConnectionResetError):
        process.stdin.write(text.encode(encoding))
        await process.stdin.drain()
    process.stdin.close()


async def launch(
    index: int,
    slot: int,
    spec: TaskSpec,
    *,
    on_stdout: ChunkCallback | None = None,
    on_stderr: ChunkCallback | None = None,
    generation: int = 0,
) -> ProcessHandle:
    """Start the process for one task and begin streaming its output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=spec.cwd,
            env=_merged_env(spec),
            stdin=asyncio.subprocess.PIPE if spec.stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if spec.merge_stderr else asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as exc:
        raise SpawnError(f"failed to start process {spec.command!r}: {exc}") from exc

    handle = ProcessHandle(
        index=index, slot=slot, spec=spec, process=process, generation=generation
    )
    handle.pumps = [
        asyncio.create_task(pump_stream(process.stdout, handle.stdout_chunks, on_stdout)),
        asyncio.create_task(pump_stream(process.stderr, handle.stderr_chunks, on_stderr)),
    ]
    if spec.stdin is not None:
        await _feed_stdin(process, spec.stdin, spec.encoding)
    return handle
