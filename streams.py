# streams.py
"""
Bounded collection of chunked upstream payloads.

Knows nothing about audio or any provider: it pulls byte chunks from an async
iterator and stops the moment either the wall-clock budget or the byte budget
is exhausted. Nothing partial is ever handed back to the caller.
"""
from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator

from config import StreamLimits
from errors import ProviderError
from logs import trace


async def _close(chunks: AsyncIterator[bytes]) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()


async def collect_bounded(
    chunks: AsyncIterator[bytes],
    limits: StreamLimits,
    *,
    source: str = "stream",
) -> bytes:
    """
    Concatenate ``chunks`` into one buffer.

    Raises ProviderError (tagged with ``source``) when the stream runs longer
    than ``limits.max_seconds``, grows past ``limits.max_bytes``, or ends
    empty. The clock starts at the first non-empty chunk; the wait before it
    is left to the outbound client's own read timeout.
    """
    buf = bytearray()
    started = None
    loop = asyncio.get_running_loop()
    try:
        async with asyncio.timeout(None) as deadline:
            async for chunk in chunks:
                if not chunk:
                    continue
                if started is None:
                    started = time.monotonic()
                    deadline.reschedule(loop.time() + limits.max_seconds)
                if len(buf) + len(chunk) > limits.max_bytes:
                    raise ProviderError(
                        source,
                        f"Stream exceeded size limit of {limits.max_bytes} bytes",
                        upstream_code="stream_too_large",
                    )
                buf.extend(chunk)
    except TimeoutError:
        buf.clear()
        await _close(chunks)
        raise ProviderError(
            source,
            f"Stream exceeded time limit of {limits.max_seconds:g}s",
            upstream_code="stream_timeout",
        ) from None
    except BaseException:
        buf.clear()
        await _close(chunks)
        raise

    if not buf or started is None:
        raise ProviderError(source, "Stream completed with no data", upstream_code="stream_empty")

    elapsed = time.monotonic() - started
    trace(f"[STREAM] source={source} bytes={len(buf)} elapsed={elapsed:.2f}s")
    return bytes(buf)
