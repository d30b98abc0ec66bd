from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from ..audit import RequestLog
from ..decoder import DEFAULT_STALL_SECONDS, LineParser, StreamEvent, decode_stream
from ..errors import (
    AuthenticationError,
    BadRequestError,
    MaxRetriesExceededError,
    NoAvailableKeysError,
    RateLimitError,
    StreamStalledError,
    UpstreamServerError,
    UpstreamStatusError,
    UpstreamTransportError,
)
from ..keys import APIKey, KeyPool
from ..metrics import request_latency_seconds, stream_stalls_total, upstream_attempts_total
from ..models import ModelRef
from ..retry import BackoffPolicy, retry_with_backoff
from ..router_contracts import ChunkHandler, CompletionRequest, CompletionResult

log = structlog.get_logger()

# Failures that say something about the key rather than the request.
_KEY_SCOPED_ERRORS = (AuthenticationError, RateLimitError, MaxRetriesExceededError)


@runtime_checkable
class ProviderAdapter(Protocol):
    """What the router needs from a vendor: attempt a completion, buffered or streamed."""

    name: str

    async def complete(
        self,
        request: CompletionRequest,
        model: ModelRef,
        client: httpx.AsyncClient,
        request_log: RequestLog,
    ) -> CompletionResult: ...

    async def stream(
        self,
        request: CompletionRequest,
        model: ModelRef,
        client: httpx.AsyncClient,
        on_chunk: ChunkHandler,
        request_log: RequestLog,
    ) -> CompletionResult: ...


@dataclass(frozen=True)
class UpstreamCall:
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


def parse_retry_after(value: str | None) -> int | None:
    return int(value) if value and value.isdigit() else None


def error_for_status(status_code: int, body: str = "", retry_after: str | None = None) -> UpstreamStatusError:
    snippet = body[:500]
    if status_code in (401, 403):
        return AuthenticationError(status_code, snippet, f"upstream rejected credentials ({status_code})")
    if status_code == 429:
        return RateLimitError(retry_after_seconds=parse_retry_after(retry_after), body=snippet)
    if status_code >= 500:
        return UpstreamServerError(status_code, snippet, f"upstream error {status_code}")
    return BadRequestError(status_code, snippet, f"received non-200 status code ({status_code}): {snippet}")


class HTTPAdapter:
    """
    Shared machinery for vendors that answer a JSON POST with a line stream.

    Subclasses supply `build_request` and `parse_line` (or `line_parser` when
    decoding needs per-stream state). This class owns the physical attempt, the
    per-key retry loop and the walk across keys.
    """

    name: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        keys: KeyPool | Iterable[str],
        *,
        base_url: str | None = None,
        policy: BackoffPolicy | None = None,
        stall_timeout: float = DEFAULT_STALL_SECONDS,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        rand: Callable[[], float] | None = None,
        attempt_timeout: float | None = None,
    ):
        self.keys = keys if isinstance(keys, KeyPool) else KeyPool.from_secrets(keys)
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.policy = policy or BackoffPolicy()
        self.stall_timeout = stall_timeout
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._rand = rand
        self.attempt_timeout = attempt_timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(keys={len(self.keys)}, base_url={self.base_url!r})"

    def build_request(self, request: CompletionRequest, model: ModelRef, key: str) -> UpstreamCall:
        raise NotImplementedError

    def parse_line(self, line: str) -> StreamEvent | None:
        raise NotImplementedError

    def line_parser(self) -> LineParser:
        return self.parse_line

    async def do_request(
        self,
        client: httpx.AsyncClient,
        request: CompletionRequest,
        model: ModelRef,
        key: str,
        on_chunk: ChunkHandler | None = None,
        request_log: RequestLog | None = None,
    ) -> CompletionResult:
        """One physical streamed POST with one key."""
        call = self.build_request(request, model, key)
        started = time.monotonic()
        http_request = client.build_request(
            "POST", call.url, params=call.params or None, headers=call.headers, json=call.body
        )
        try:
            response = await client.send(http_request, stream=True)
        except httpx.TransportError as e:
            upstream_attempts_total.labels(provider=self.name, outcome="transport_error").inc()
            raise UpstreamTransportError(f"{self.name} request failed: {e!r}") from e

        try:
            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                upstream_attempts_total.labels(provider=self.name, outcome=str(response.status_code)).inc()
                log.warning(
                    "upstream_non_200",
                    provider=self.name,
                    model=model.name,
                    status_code=response.status_code,
                    body=body[:500],
                )
                raise error_for_status(response.status_code, body, response.headers.get("retry-after"))

            try:
                outcome = await decode_stream(
                    response.aiter_lines(),
                    self.line_parser(),
                    on_chunk=on_chunk,
                    stall_timeout=self.stall_timeout,
                    request_log=request_log,
                )
            except StreamStalledError:
                stream_stalls_total.labels(provider=self.name).inc()
                upstream_attempts_total.labels(provider=self.name, outcome="stalled").inc()
                raise
            except httpx.TransportError as e:
                upstream_attempts_total.labels(provider=self.name, outcome="transport_error").inc()
                raise UpstreamTransportError(f"{self.name} stream read failed: {e!r}") from e
        finally:
            await response.aclose()

        upstream_attempts_total.labels(provider=self.name, outcome="success").inc()
        request_latency_seconds.labels(provider=self.name).observe(max(0.0, time.monotonic() - started))
        return CompletionResult(
            content=outcome.content,
            model=model.name,
            usage=outcome.usage,
            thoughts=outcome.thoughts,
        )

    async def _bounded_request(
        self,
        client: httpx.AsyncClient,
        request: CompletionRequest,
        model: ModelRef,
        key: str,
        on_chunk: ChunkHandler | None,
        request_log: RequestLog,
    ) -> CompletionResult:
        """`do_request` under an overall deadline; httpx timeouts only bound each connect or read."""
        attempt = self.do_request(client, request, model, key, on_chunk, request_log)
        if self.attempt_timeout is None:
            return await attempt
        try:
            return await asyncio.wait_for(attempt, self.attempt_timeout)
        except asyncio.TimeoutError as e:
            upstream_attempts_total.labels(provider=self.name, outcome="timeout").inc()
            raise UpstreamTransportError(
                f"{self.name} request did not complete within {self.attempt_timeout:g}s"
            ) from e

    async def _attempt_with_key(
        self,
        client: httpx.AsyncClient,
        request: CompletionRequest,
        model: ModelRef,
        key: APIKey,
        on_chunk: ChunkHandler | None,
        request_log: RequestLog,
    ) -> CompletionResult:
        operation = functools.partial(self._bounded_request, client, request, model, key.secret, on_chunk, request_log)
        return await retry_with_backoff(
            operation,
            policy=self.policy,
            request_log=request_log,
            sleeper=self._sleep,
            rand=self._rand,
            label=self.name,
        )

    async def _run(
        self,
        request: CompletionRequest,
        model: ModelRef,
        client: httpx.AsyncClient,
        on_chunk: ChunkHandler | None,
        request_log: RequestLog,
    ) -> CompletionResult:
        last_error: Exception | None = None
        for index, key in self.keys.candidates():
            request_log.add(
                f"attempting to complete request with key_number: {index} ({key.name})",
                stage="adapter",
            )
            try:
                return await self._attempt_with_key(client, request, model, key, on_chunk, request_log)
            except _KEY_SCOPED_ERRORS as e:
                request_log.add(f"key_number: {index} failed, err: {e}", stage="adapter")
                cause = e.last_error if isinstance(e, MaxRetriesExceededError) else e
                if isinstance(cause, RateLimitError):
                    key.mark_rate_limited(cause.retry_after_seconds)
                log.info("adapter_key_failed", provider=self.name, key_number=index, error=str(e))
                last_error = e
            except Exception as e:
                request_log.add(f"request aborted on key_number: {index}, err: {e}", stage="adapter")
                raise

        if last_error is None:
            request_log.add(f"no available API keys for provider: {self.name}", stage="adapter")
            raise NoAvailableKeysError(self.name)
        raise last_error

    async def complete(
        self,
        request: CompletionRequest,
        model: ModelRef,
        client: httpx.AsyncClient,
        request_log: RequestLog,
    ) -> CompletionResult:
        return await self._run(request, model, client, None, request_log)

    async def stream(
        self,
        request: CompletionRequest,
        model: ModelRef,
        client: httpx.AsyncClient,
        on_chunk: ChunkHandler,
        request_log: RequestLog,
    ) -> CompletionResult:
        return await self._run(request, model, client, on_chunk, request_log)
