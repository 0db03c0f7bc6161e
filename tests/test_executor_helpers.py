from __future__ import annotations

import asyncio
import signal
import sys

import pytest

from procpool.config.schema import TaskSpec
from procpool.exec.capture import decode_chunks, pump_stream
from procpool.exec.executor import launch
from procpool.exec.timeout import DeadlineTimer, resolve_timeout
from procpool.util.errors import SpawnError


def _py(code: str, **kwargs: object) -> TaskSpec:
    return TaskSpec(command=sys.executable, args=("-c", code), **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_launch_streams_and_accumulates_output() -> None:
    seen: list[bytes] = []
    spec = _py("import sys; print('out'); print('err', file=sys.stderr); sys.exit(5)")

    handle = await launch(0, 0, spec, on_stdout=seen.append)
    exit_code, signal_name = await handle.wait_closed()

    assert (exit_code, signal_name) == (5, None)
    assert handle.stdout == "out\n"
    assert handle.stderr == "err\n"
    assert b"".join(seen) == b"out\n"
    assert handle.pid is not None


@pytest.mark.asyncio
async def test_launch_feeds_stdin_and_applies_env_and_cwd(tmp_path) -> None:
    spec = _py(
        "import os, sys; print(sys.stdin.read().upper()); print(os.environ['PP_FLAG']); "
        "print(os.getcwd())",
        stdin="hello",
        env={"PP_FLAG": "on"},
        cwd=str(tmp_path),
    )

    handle = await launch(0, 0, spec)
    exit_code, _ = await handle.wait_closed()

    lines = handle.stdout.splitlines()
    assert exit_code == 0
    assert lines[0] == "HELLO"
    assert lines[1] == "on"
    assert lines[2] == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_launch_merges_stderr_into_stdout() -> None:
    spec = _py("import sys; print('a', flush=True); print('b', file=sys.stderr)", merge_stderr=True)

    handle = await launch(0, 0, spec)
    await handle.wait_closed()

    assert handle.stdout.split() == ["a", "b"]
    assert handle.stderr == ""


@pytest.mark.asyncio
async def test_launch_raises_spawn_error_for_missing_command() -> None:
    with pytest.raises(SpawnError, match="failed to start process"):
        await launch(0, 0, TaskSpec(command="__procpool_missing_binary__"))


@pytest.mark.asyncio
async def test_kill_reports_signal_name() -> None:
    handle = await launch(0, 0, _py("import time; time.sleep(10)"))
    handle.kill(signal.SIGKILL)
    exit_code, signal_name = await handle.wait_closed()

    assert exit_code is None
    assert signal_name == "SIGKILL"
    handle.kill(signal.SIGTERM)


@pytest.mark.asyncio
async def test_pump_stream_awaits_async_callbacks() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"abc")
    reader.feed_eof()
    chunks: list[bytes] = []
    forwarded: list[bytes] = []

    async def on_chunk(chunk: bytes) -> None:
        await asyncio.sleep(0)
        forwarded.append(chunk)

    await pump_stream(reader, chunks, on_chunk)

    assert chunks == [b"abc"]
    assert forwarded == [b"abc"]
    await pump_stream(None, chunks)


def test_decode_chunks_replaces_invalid_bytes() -> None:
    assert decode_chunks([b"ok ", b"\xff"]) == "ok �"


def test_resolve_timeout_prefers_task_override() -> None:
    assert resolve_timeout(2.0, 10.0) == 2.0
    assert resolve_timeout(None, 10.0) == 10.0
    assert resolve_timeout(None, None) is None


@pytest.mark.asyncio
async def test_deadline_timer_fires_once_after_delay() -> None:
    fired: list[str] = []

    async def on_expire() -> None:
        fired.append("x")

    timer = DeadlineTimer(0.05, on_expire)
    timer.arm()
    await asyncio.sleep(0.2)

    assert fired == ["x"]
    assert timer.fired is True
    timer.disarm()
    await timer.settle()
    assert fired == ["x"]


@pytest.mark.asyncio
async def test_deadline_timer_disarm_prevents_expiry() -> None:
    fired: list[str] = []

    async def on_expire() -> None:
        fired.append("x")

    timer = DeadlineTimer(0.05, on_expire)
    timer.arm()
    timer.disarm()
    await asyncio.sleep(0.15)

    assert fired == []
    assert timer.fired is False
    await timer.settle()


@pytest.mark.asyncio
async def test_deadline_timer_settle_reraises_expiry_error() -> None:
    async def on_expire() -> None:
        raise RuntimeError("expiry hook failed")

    timer = DeadlineTimer(0.01, on_expire)
    timer.arm()
    await asyncio.sleep(0.1)
    timer.disarm()

    with pytest.raises(RuntimeError, match="expiry hook failed"):
        await timer.settle()
