import asyncio
from dataclasses import dataclass
from typing import ClassVar

import httpx
import pytest

from llm_relay import Router
from llm_relay.adapters import OpenAIAdapter
from llm_relay.audit import RequestLog
from llm_relay.errors import (
    BadRequestError,
    ChunkHandlerError,
    ConfigurationError,
    NoChunkHandlerError,
    UnsupportedProviderError,
    UpstreamServerError,
)
from llm_relay.models import ModelRef, OpenAIModel
from llm_relay.retry import BackoffPolicy
from llm_relay.router_contracts import CompletionRequest, CompletionResult


@dataclass(frozen=True)
class FakeModel(ModelRef):
    provider: ClassVar[str] = "fake"


@dataclass(frozen=True)
class GhostModel(ModelRef):
    provider: ClassVar[str] = "ghost"


class ScriptedAdapter:
    """Fails for the model names listed in `failures`, succeeds otherwise."""

    name = "fake"

    def __init__(self, failures: dict[str, Exception] | None = None, chunks: tuple[str, ...] = ()):
        self.failures = failures or {}
        self.chunks = chunks
        self.calls: list[str] = []

    async def _run(self, model, on_chunk, request_log: RequestLog) -> CompletionResult:
        self.calls.append(model.name)
        request_log.add(f"fake adapter handling {model.name}", stage="adapter")
        if model.name in self.failures:
            raise self.failures[model.name]
        for chunk in self.chunks:
            if on_chunk is not None:
                on_chunk(chunk)
        return CompletionResult(content="".join(self.chunks) or f"from {model.name}", model=model.name)

    async def complete(self, request, model, client, request_log):
        return await self._run(model, None, request_log)

    async def stream(self, request, model, client, on_chunk, request_log):
        return await self._run(model, on_chunk, request_log)


def _attempt_events(request_log: RequestLog) -> list[str]:
    return [e.description for e in request_log.events_for("dispatch") if e.description.startswith("attempting model")]


@pytest.mark.asyncio
async def test_failing_primary_without_fallback_returns_its_error():
    adapter = ScriptedAdapter({"primary": BadRequestError(400, "nope")})
    async with Router([adapter]) as router:
        req = CompletionRequest(model=FakeModel("primary"), user_message="hi")
        with pytest.raises(BadRequestError) as exc:
            await router.complete(req)

    request_log = exc.value.request_log
    assert request_log is not None
    assert len(_attempt_events(request_log)) == 1
    assert request_log.completed is False
    assert request_log.end is not None
    assert request_log.user_msg == "hi"


@pytest.mark.asyncio
async def test_fallbacks_tried_in_order_until_success():
    adapter = ScriptedAdapter({"m0": UpstreamServerError(503), "m1": UpstreamServerError(502)})
    async with Router([adapter]) as router:
        req = CompletionRequest(
            model=FakeModel("m0"),
            fallback=(FakeModel("m1"), FakeModel("m2"), FakeModel("m3")),
            user_message="hi",
            system_message="sys",
        )
        res = await router.complete(req)

    assert res.content == "from m2"
    assert res.model == "m2"
    # nothing consulted after the first success
    assert adapter.calls == ["m0", "m1", "m2"]

    descriptions = [e.description for e in res.request_log.events_for("dispatch")]
    assert descriptions == [
        "start of call to Complete",
        "attempting model: m0 (provider: fake)",
        "model: m0 failed, err: received non-200 status code (503)",
        "attempting model: m1 (provider: fake)",
        "model: m1 failed, err: received non-200 status code (502)",
        "attempting model: m2 (provider: fake)",
        "model: m2 succeeded",
    ]
    assert res.request_log.completed is True
    assert res.request_log.response == "from m2"
    assert res.request_log.model == "m2"
    timestamps = [e.timestamp for e in res.request_log.events]
    assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_unregistered_provider_is_skipped_and_logged():
    adapter = ScriptedAdapter()
    async with Router([adapter]) as router:
        req = CompletionRequest(model=GhostModel("g"), fallback=(FakeModel("f"),), user_message="hi")
        res = await router.complete(req)

    assert res.model == "f"
    assert any("provider: ghost not registered" in e.description for e in res.request_log.events)


@pytest.mark.asyncio
async def test_no_registered_provider_is_configuration_error():
    async with Router([ScriptedAdapter()]) as router:
        req = CompletionRequest(model=GhostModel("g"), user_message="hi")
        with pytest.raises(UnsupportedProviderError) as exc:
            await router.complete(req)
    assert isinstance(exc.value, ConfigurationError)
    assert exc.value.request_log is not None


@pytest.mark.asyncio
async def test_stream_without_handler_fails_before_any_network_call():
    def handler(_: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    async with Router([OpenAIAdapter(["k"])], client=client) as router:
        req = CompletionRequest(model=OpenAIModel("gpt-4o"), user_message="hi")
        with pytest.raises(NoChunkHandlerError):
            await router.stream(req, None)
    assert "request_type" not in req.tags


@pytest.mark.asyncio
async def test_request_type_tag_is_recorded():
    async with Router([ScriptedAdapter(chunks=("a",))]) as router:
        completion = CompletionRequest(model=FakeModel("m"), user_message="hi", tags={"env": "test"})
        await router.complete(completion)
        streaming = CompletionRequest(model=FakeModel("m"), user_message="hi")
        await router.stream(streaming, lambda _: None)
    assert completion.tags == {"env": "test", "request_type": "completion"}
    assert streaming.tags == {"request_type": "streaming"}


@pytest.mark.asyncio
async def test_chunk_handler_failure_does_not_fall_back():
    adapter = ScriptedAdapter({"m0": ChunkHandlerError("handler blew up")})
    async with Router([adapter]) as router:
        req = CompletionRequest(model=FakeModel("m0"), fallback=(FakeModel("m1"),), user_message="hi")
        with pytest.raises(ChunkHandlerError):
            await router.stream(req, lambda _: None)
    assert adapter.calls == ["m0"]


@pytest.mark.asyncio
async def test_log_sink_receives_trail_on_success_and_failure():
    sink: list[RequestLog] = []
    adapter = ScriptedAdapter({"bad": BadRequestError(400)})
    async with Router([adapter], log_sink=sink.append) as router:
        await router.complete(CompletionRequest(model=FakeModel("good"), user_message="hi"))
        with pytest.raises(BadRequestError):
            await router.complete(CompletionRequest(model=FakeModel("bad"), user_message="hi"))
    assert [s.completed for s in sink] == [True, False]
    assert sink[1].to_dict()["events"][0]["description"] == "start of call to Complete"


@pytest.mark.asyncio
async def test_cancellation_closes_trail_and_propagates():
    started = asyncio.Event()
    sink: list[RequestLog] = []

    class HangingAdapter:
        name = "fake"

        async def complete(self, request, model, client, request_log):
            started.set()
            await asyncio.sleep(3600)

        async def stream(self, request, model, client, on_chunk, request_log):  # pragma: no cover
            raise AssertionError

    async with Router([HangingAdapter()], log_sink=sink.append) as router:
        req = CompletionRequest(model=FakeModel("m"), fallback=(FakeModel("n"),), user_message="hi")
        task = asyncio.create_task(router.complete(req))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert len(sink) == 1
    assert sink[0].completed is False
    assert sink[0].events[-1].description.startswith("call cancelled")


def test_duplicate_provider_registration_rejected():
    with pytest.raises(ConfigurationError):
        Router([ScriptedAdapter(), ScriptedAdapter()])


def test_registry_is_read_only():
    router = Router({"fake": ScriptedAdapter()})
    with pytest.raises(TypeError):
        router.providers["other"] = ScriptedAdapter()  # type: ignore[index]


@pytest.mark.asyncio
async def test_end_to_end_fallback_over_http(sse_body, no_sleep):
    def handler(request: httpx.Request) -> httpx.Response:
        import json

        model = json.loads(request.content)["model"]
        if model == "gpt-primary":
            return httpx.Response(500, text="boom")
        return httpx.Response(
            200,
            text=sse_body(
                {"choices": [{"delta": {"content": "Hello"}}]},
                {"choices": [{"delta": {"content": " world"}}]},
            ),
        )

    adapter = OpenAIAdapter(["k"], policy=BackoffPolicy(max_attempts=2), sleeper=no_sleep)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    chunks: list[str] = []
    async with Router([adapter], client=client) as router:
        req = CompletionRequest(
            model=OpenAIModel("gpt-primary"),
            fallback=(OpenAIModel("gpt-backup"),),
            user_message="hi",
        )
        res = await router.stream(req, chunks.append)

    assert chunks == ["Hello", " world"]
    assert res.content == "Hello world"
    assert res.model == "gpt-backup"
    assert len(no_sleep.delays) == 1
    failures = [e for e in res.request_log.events_for("dispatch") if "failed" in e.description]
    assert len(failures) == 1
    assert "max retries exceeded" in failures[0].description


@pytest.mark.asyncio
async def test_aclose_leaves_caller_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(200)))
    async with Router([ScriptedAdapter()], client=client):
        pass
    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_aclose_closes_own_client():
    router = Router([ScriptedAdapter()])
    await router.aclose()
    assert router._client.is_closed
