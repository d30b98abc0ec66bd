from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from .audit import RequestLog
from .errors import (
    MaxRetriesExceededError,
    StreamStalledError,
    UpstreamStatusError,
    UpstreamTransportError,
)
from .metrics import retries_total

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 5
    initial_seconds: float = 0.1
    max_seconds: float = 10.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    def nominal(self, attempt_index: int) -> float:
        # attempt_index: 0-based retry count (0 for first retry)
        return float(min(self.max_seconds, self.initial_seconds * (2**attempt_index)))

    def compute(self, attempt_index: int, rand: Callable[[], float] = random.random) -> float:
        base = self.nominal(attempt_index)
        return base * (1.0 - self.jitter + 2.0 * self.jitter * rand())


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamStatusError):
        return is_retryable_status(exc.status_code)
    return isinstance(exc, (UpstreamTransportError, StreamStalledError))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    request_log: RequestLog,
    sleeper: Callable[[float], Awaitable[None]] | None = None,
    rand: Callable[[], float] | None = None,
    label: str = "",
) -> T:
    """
    Run `operation` until it succeeds, a terminal error occurs, or the attempt
    budget is spent.

    Terminal errors propagate unchanged. Exhausting the budget raises
    MaxRetriesExceededError chained to the last cause. Cancellation is logged
    and re-raised, never retried.
    """
    sleep = sleeper or asyncio.sleep
    draw = rand or random.random
    prefix = f"{label}: " if label else ""
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        request_log.add(
            f"{prefix}attempting request with exponential backoff. attempt: {attempt + 1}/{policy.max_attempts}",
            stage="retry",
        )
        try:
            return await operation()
        except asyncio.CancelledError:
            request_log.add(f"{prefix}call cancelled during attempt {attempt + 1}", stage="retry")
            raise
        except Exception as e:
            request_log.add(f"{prefix}request could not be completed, err: {e}", stage="retry")
            if not is_retryable(e):
                request_log.add(f"{prefix}request was not retryable due to err: {e}", stage="retry")
                raise
            last_error = e

        if attempt >= policy.max_attempts - 1:
            break

        delay = policy.compute(attempt, draw)
        retries_total.labels(provider=label or "unknown").inc()
        log.debug("retry_backoff", label=label, attempt=attempt + 1, delay_seconds=round(delay, 4))
        try:
            await sleep(delay)
        except asyncio.CancelledError:
            request_log.add(f"{prefix}call cancelled during backoff wait", stage="retry")
            raise

    request_log.add(f"{prefix}max retries exceeded: {last_error}", stage="retry")
    raise MaxRetriesExceededError(last_error, policy.max_attempts) from last_error
