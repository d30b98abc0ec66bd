from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

dispatch_total = Counter(
    "relay_dispatch_total",
    "Dispatch outcomes per candidate model",
    labelnames=["provider", "outcome"],
)

upstream_attempts_total = Counter(
    "relay_upstream_attempts_total",
    "Physical upstream HTTP attempts",
    labelnames=["provider", "outcome"],
)

retries_total = Counter(
    "relay_retries_total",
    "Backoff waits scheduled before a retry",
    labelnames=["provider"],
)

stream_stalls_total = Counter(
    "relay_stream_stalls_total",
    "Streams that produced no data within the grace period",
    labelnames=["provider"],
)

request_latency_seconds = Histogram(
    "relay_request_latency_seconds",
    "Latency of one physical upstream request",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["provider"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
