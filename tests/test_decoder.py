import asyncio
import json

import pytest

from llm_relay.audit import RequestLog
from llm_relay.decoder import StreamEvent, decode_stream, strip_framing
from llm_relay.errors import ChunkHandlerError, StreamStalledError, UpstreamProtocolError
from llm_relay.router_contracts import Usage


async def _lines(*lines: str):
    for line in lines:
        yield line


def _parse(line: str) -> StreamEvent | None:
    data = json.loads(line)
    usage = data.get("usage")
    return StreamEvent(
        delta=data.get("text"),
        usage=Usage(**usage) if usage else None,
        thought=bool(data.get("thought")),
    )


def test_strip_framing():
    assert strip_framing('data: {"a":1}\n') == '{"a":1}'
    assert strip_framing("data:[DONE]") == "[DONE]"
    assert strip_framing("   ") is None
    assert strip_framing(": keep-alive") is None
    assert strip_framing("event: message_start") is None
    assert strip_framing('{"raw": true}') == '{"raw": true}'


@pytest.mark.asyncio
async def test_chunks_delivered_in_order_and_aggregated():
    received = []

    outcome = await decode_stream(
        _lines('data: {"text": "Hello"}', "", 'data: {"text": " world"}', "", "data: [DONE]"),
        _parse,
        on_chunk=received.append,
    )

    assert received == ["Hello", " world"]
    assert outcome.content == "Hello world"
    assert outcome.events == 2


@pytest.mark.asyncio
async def test_async_callback_completes_before_next_chunk():
    order = []

    async def on_chunk(chunk: str) -> None:
        order.append(f"start:{chunk}")
        await asyncio.sleep(0)
        order.append(f"end:{chunk}")

    await decode_stream(_lines('data: {"text": "a"}', 'data: {"text": "b"}'), _parse, on_chunk=on_chunk)
    assert order == ["start:a", "end:a", "start:b", "end:b"]


@pytest.mark.asyncio
async def test_sentinel_ends_stream_and_usage_is_kept():
    outcome = await decode_stream(
        _lines(
            'data: {"text": "x"}',
            'data: {"usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}}',
            "data: [DONE]",
            'data: {"text": "never"}',
        ),
        _parse,
    )
    assert outcome.content == "x"
    assert outcome.usage == Usage(prompt_tokens=3, completion_tokens=1, total_tokens=4)


@pytest.mark.asyncio
async def test_thoughts_are_kept_apart_from_content():
    received = []
    outcome = await decode_stream(
        _lines('data: {"text": "hmm", "thought": true}', 'data: {"text": "answer"}'),
        _parse,
        on_chunk=received.append,
    )
    assert received == ["answer"]
    assert outcome.thoughts == "hmm"
    assert outcome.content == "answer"


@pytest.mark.asyncio
async def test_callback_error_aborts_stream():
    seen = []

    def on_chunk(chunk: str) -> None:
        seen.append(chunk)
        raise RuntimeError("client went away")

    with pytest.raises(ChunkHandlerError) as exc:
        await decode_stream(_lines('data: {"text": "a"}', 'data: {"text": "b"}'), _parse, on_chunk=on_chunk)
    assert seen == ["a"]
    assert isinstance(exc.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_malformed_line_raises_protocol_error():
    request_log = RequestLog()
    with pytest.raises(UpstreamProtocolError):
        await decode_stream(_lines("data: {not json"), _parse, request_log=request_log)
    assert request_log.events_for("stream")


@pytest.mark.asyncio
async def test_silent_stream_fails_fast():
    async def silent():
        await asyncio.sleep(3600)
        yield 'data: {"text": "late"}'

    request_log = RequestLog()
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(StreamStalledError):
        await decode_stream(silent(), _parse, stall_timeout=0.05, request_log=request_log)
    assert loop.time() - started < 1.0
    assert "stalled" in request_log.events[-1].description


@pytest.mark.asyncio
async def test_stall_guard_only_applies_before_first_data():
    async def slow_after_first():
        yield 'data: {"text": "a"}'
        await asyncio.sleep(0.1)
        yield 'data: {"text": "b"}'

    outcome = await decode_stream(slow_after_first(), _parse, stall_timeout=0.05)
    assert outcome.content == "ab"
