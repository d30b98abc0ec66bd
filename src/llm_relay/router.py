from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType

import httpx
import structlog

from .adapters import ADAPTER_CLASSES, ProviderAdapter
from .audit import RequestLog
from .config import RelayConfig
from .errors import (
    ChunkHandlerError,
    ConfigurationError,
    NoChunkHandlerError,
    RelayError,
    UnsupportedProviderError,
)
from .keys import KeyPool
from .logging import configure_logging
from .metrics import dispatch_total, maybe_start_metrics
from .models import ModelRef
from .router_contracts import ChunkHandler, CompletionRequest, CompletionResult

log = structlog.get_logger()

LogSink = Callable[[RequestLog], None]

# Errors that end the whole walk instead of moving to the next fallback model.
_ABORTING_ERRORS = (ChunkHandlerError,)


class Router:
    """
    Dispatches one logical completion across a primary model and its fallbacks.

    Adapters are registered once, at construction, keyed by provider id. Each
    call walks `[request.model, *request.fallback]` in order and returns the
    first success; when every candidate fails the last error is raised with the
    call's audit trail attached as `request_log`.
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter] | Iterable[ProviderAdapter],
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 60.0,
        log_sink: LogSink | None = None,
    ):
        if isinstance(adapters, Mapping):
            registry = dict(adapters)
        else:
            registry = {}
            for adapter in adapters:
                if adapter.name in registry:
                    raise ConfigurationError(f"Provider {adapter.name!r} registered twice.")
                registry[adapter.name] = adapter
        self._adapters: Mapping[str, ProviderAdapter] = MappingProxyType(registry)
        # caller-supplied clients are left open
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._log_sink = log_sink

    @classmethod
    def from_config(
        cls,
        cfg: RelayConfig,
        *,
        client: httpx.AsyncClient | None = None,
        log_sink: LogSink | None = None,
    ) -> "Router":
        policy = cfg.backoff_policy()
        adapters: list[ProviderAdapter] = []
        for provider, secrets in cfg.provider_keys().items():
            adapter_cls = ADAPTER_CLASSES.get(provider)
            if adapter_cls is None:
                log.warning("router_unknown_provider_keys", provider=provider)
                continue
            pool = KeyPool.from_secrets(
                secrets,
                max_requests=cfg.key_max_requests,
                quota_period=cfg.key_quota_period_seconds,
            )
            adapters.append(
                adapter_cls(
                    pool,
                    policy=policy,
                    stall_timeout=cfg.stream_stall_seconds,
                    attempt_timeout=cfg.http_timeout_seconds,
                )
            )
        return cls(adapters, client=client, timeout_seconds=cfg.http_timeout_seconds, log_sink=log_sink)

    @property
    def providers(self) -> Mapping[str, ProviderAdapter]:
        return self._adapters

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "Router":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        request.tags["request_type"] = "completion"
        request_log = self._open_log(request, "start of call to Complete")
        return await self._dispatch(request, None, request_log)

    async def stream(self, request: CompletionRequest, on_chunk: ChunkHandler | None) -> CompletionResult:
        if on_chunk is None:
            raise NoChunkHandlerError()
        request.tags["request_type"] = "streaming"
        request_log = self._open_log(request, "start of call to Stream")
        return await self._dispatch(request, on_chunk, request_log)

    def _open_log(self, request: CompletionRequest, description: str) -> RequestLog:
        request_log = RequestLog(system_msg=request.system_message, user_msg=request.user_message)
        request_log.add(description)
        return request_log

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        request: CompletionRequest,
        model: ModelRef,
        on_chunk: ChunkHandler | None,
        request_log: RequestLog,
    ) -> CompletionResult:
        if on_chunk is None:
            return await adapter.complete(request, model, self._client, request_log)
        return await adapter.stream(request, model, self._client, on_chunk, request_log)

    async def _dispatch(
        self,
        request: CompletionRequest,
        on_chunk: ChunkHandler | None,
        request_log: RequestLog,
    ) -> CompletionResult:
        mode = "stream" if on_chunk is not None else "complete"
        started = time.monotonic()
        last_error: Exception | None = None

        with structlog.contextvars.bound_contextvars(call_id=uuid.uuid4().hex, mode=mode):
            try:
                for model in request.candidates():
                    adapter = self._adapters.get(model.provider)
                    if adapter is None:
                        request_log.add(
                            f"attempting model: {model.name} but provider: {model.provider} "
                            "not registered on router. attempting with next model."
                        )
                        dispatch_total.labels(provider=model.provider or "unknown", outcome="skipped").inc()
                        log.info("dispatch_skip", model=model.name, provider=model.provider)
                        continue

                    request_log.add(f"attempting model: {model.name} (provider: {model.provider})")
                    log.info("dispatch_attempt", model=model.name, provider=model.provider)
                    try:
                        result = await self._attempt(adapter, request, model, on_chunk, request_log)
                    except _ABORTING_ERRORS as e:
                        request_log.add(f"model: {model.name} aborted, err: {e}")
                        dispatch_total.labels(provider=model.provider, outcome="aborted").inc()
                        raise
                    except Exception as e:
                        request_log.add(f"model: {model.name} failed, err: {e}")
                        dispatch_total.labels(provider=model.provider, outcome="failure").inc()
                        log.warning("dispatch_failure", model=model.name, provider=model.provider, error=str(e))
                        last_error = e
                        continue

                    request_log.add(f"model: {model.name} succeeded")
                    dispatch_total.labels(provider=model.provider, outcome="success").inc()
                    request_log.close(completed=True, response=result.content, model=result.model)
                    log.info(
                        "dispatch_complete",
                        model=result.model,
                        latency_seconds=round(time.monotonic() - started, 3),
                        total_tokens=result.usage.total_tokens,
                    )
                    self._emit(request_log)
                    return CompletionResult(
                        content=result.content,
                        model=result.model,
                        usage=result.usage,
                        request_log=request_log,
                        thoughts=result.thoughts,
                    )

                if last_error is None:
                    last_error = UnsupportedProviderError(
                        "no provider registered for any of: "
                        + ", ".join(f"{m.provider}/{m.name}" for m in request.candidates())
                    )
                    request_log.add(str(last_error))
                raise last_error
            except BaseException as e:
                # covers cancellation too; the trail is closed before anything propagates
                if request_log.end is None:
                    if not isinstance(e, Exception):
                        request_log.add(f"call cancelled: {e!r}")
                    request_log.close(completed=False)
                    log.warning("dispatch_failed", error=str(e) or type(e).__name__)
                    if isinstance(e, RelayError):
                        e.request_log = request_log
                    self._emit(request_log)
                raise

    def _emit(self, request_log: RequestLog) -> None:
        if self._log_sink is None:
            return
        try:
            self._log_sink(request_log)
        except Exception:
            log.exception("request_log_sink_failed")


def create_router(
    cfg: RelayConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    log_sink: LogSink | None = None,
) -> Router:
    """Build a router from environment config, wiring logging and metrics the same way."""
    cfg = cfg or RelayConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.all_secrets())
    maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
    return Router.from_config(cfg, client=client, log_sink=log_sink)
