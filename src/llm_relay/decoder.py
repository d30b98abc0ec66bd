from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from .audit import RequestLog
from .errors import ChunkHandlerError, StreamStalledError, UpstreamProtocolError
from .router_contracts import ChunkHandler, Usage

log = structlog.get_logger()

DONE_SENTINEL = "[DONE]"
DEFAULT_STALL_SECONDS = 3.0

_SSE_FIELDS = ("event:", "id:", "retry:")


@dataclass(frozen=True)
class StreamEvent:
    """What an adapter extracted from one line of a vendor stream."""

    delta: str | None = None
    usage: Usage | None = None
    thought: bool = False


@dataclass(frozen=True)
class StreamOutcome:
    content: str
    thoughts: str
    usage: Usage
    events: int


LineParser = Callable[[str], "StreamEvent | None"]


def load_object(payload: str) -> dict[str, Any]:
    """Decode one stream payload that must be a JSON object."""
    obj = json.loads(payload)
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


def strip_framing(line: str) -> str | None:
    """Return the payload of one SSE line, or None when the line carries no payload."""
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if line.startswith("data:"):
        return line[len("data:") :].strip() or None
    if line.startswith(_SSE_FIELDS):
        return None
    return line


async def _next_line(iterator: AsyncIterator[str]) -> str:
    return await iterator.__anext__()


async def _deliver(on_chunk: ChunkHandler, delta: str) -> None:
    try:
        result = on_chunk(delta)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise ChunkHandlerError(f"chunk handler failed: {e}") from e


async def decode_stream(
    lines: AsyncIterator[str],
    parse_line: LineParser,
    *,
    on_chunk: ChunkHandler | None = None,
    stall_timeout: float = DEFAULT_STALL_SECONDS,
    request_log: RequestLog | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> StreamOutcome:
    """
    Consume a line-oriented vendor stream into one aggregate result.

    Every non-empty content delta is appended to the result and, when
    `on_chunk` is given, handed to it before the next line is read. If no line
    at all arrives within `stall_timeout` seconds the stream is treated as
    stalled. `stall_timeout <= 0` disables the guard.
    """
    iterator = lines.__aiter__()
    content: list[str] = []
    thoughts: list[str] = []
    usage = Usage()
    events = 0
    received = False
    deadline = clock() + stall_timeout

    while True:
        try:
            if not received and stall_timeout > 0:
                remaining = deadline - clock()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                raw = await asyncio.wait_for(_next_line(iterator), timeout=remaining)
            else:
                raw = await _next_line(iterator)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError as e:
            if request_log is not None:
                request_log.add(f"stream stalled: no data within {stall_timeout:g}s", stage="stream")
            raise StreamStalledError(stall_timeout) from e
        received = True

        payload = strip_framing(raw)
        if payload is None:
            continue
        if payload == DONE_SENTINEL:
            break

        try:
            event = parse_line(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            if request_log is not None:
                request_log.add(f"failed to decode stream line: {e}", stage="stream")
            raise UpstreamProtocolError(f"unmarshal chunk: {e}") from e
        if event is None:
            continue
        events += 1

        if event.usage is not None:
            usage = event.usage
        if not event.delta:
            continue
        if event.thought:
            thoughts.append(event.delta)
            continue
        content.append(event.delta)
        if on_chunk is not None:
            await _deliver(on_chunk, event.delta)

    log.debug("stream_decoded", events=events, content_chars=sum(len(c) for c in content))
    return StreamOutcome(content="".join(content), thoughts="".join(thoughts), usage=usage, events=events)
