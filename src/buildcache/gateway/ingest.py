"""Bounded reading of request and response bodies."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional

from .errors import BadRequest, EntryTooLarge


def parse_content_length(header: Optional[str]) -> Optional[int]:
    """Return the declared body size, ``None`` when unknown (chunked upload)."""

    if header is None:
        return None
    value = header.strip()
    if not value.isdigit():
        raise BadRequest("invalid Content-Length header")
    return int(value)


async def read_bounded(stream: AsyncIterator[bytes], limit: int) -> bytes:
    """Read a body of unknown length, keeping at most ``limit + 1`` bytes.

    Seeing more than ``limit`` bytes raises ``EntryTooLarge``; a body of exactly
    ``limit`` bytes is accepted.
    """

    buffer = bytearray()
    async for chunk in stream:
        if not chunk:
            continue
        remaining = limit + 1 - len(buffer)
        buffer.extend(chunk[:remaining])
        if len(buffer) > limit:
            raise EntryTooLarge(limit)
    return bytes(buffer)


async def guard_size(stream: AsyncIterator[bytes], limit: int) -> AsyncIterator[bytes]:
    """Pass chunks through, failing as soon as the running total exceeds ``limit``."""

    received = 0
    async for chunk in stream:
        received += len(chunk)
        if received > limit:
            raise EntryTooLarge(limit, received)
        yield chunk


async def with_deadline(
    stream: AsyncIterator[bytes],
    seconds: float,
    on_timeout: Callable[[], Exception],
) -> AsyncIterator[bytes]:
    """Yield from ``stream`` until it ends or ``seconds`` have elapsed in total."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds
    iterator = stream.__aiter__()
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise on_timeout()
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise on_timeout() from None
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
