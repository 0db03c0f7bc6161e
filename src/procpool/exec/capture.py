from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

ChunkCallback = Callable[[bytes], Awaitable[None] | None]


async def pump_stream(
    stream: asyncio.StreamReader | None,
    chunks: list[bytes],
    on_chunk: ChunkCallback | None = None,
    *,
    chunk_size: int = 4096,
) -> None:
    """Drain ``stream`` into ``chunks``, forwarding each chunk as it arrives."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        chunks.append(chunk)
        if on_chunk is not None:
            result = on_chunk(chunk)
            if inspect.isawaitable(result):
                await result


def decode_chunks(chunks: list[bytes], encoding: str = "utf-8") -> str:
    return b"".join(chunks).decode(encoding, errors="replace")
