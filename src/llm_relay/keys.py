from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class KeyUsage:
    name: str
    used: int
    available: int | None
    max_requests: int | None
    reset_at: float
    blocked_until: float | None


class APIKey:
    """
    One vendor API key plus its quota bookkeeping.

    Every read or write of the counters takes the key's own lock, so concurrent
    calls sharing a key never race on exhaustion or window reset.
    """

    def __init__(
        self,
        secret: str,
        *,
        name: str | None = None,
        max_requests: int | None = None,
        quota_period: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ):
        if max_requests is not None and max_requests <= 0:
            raise ValueError("max_requests must be greater than zero")
        self.secret = secret
        self.name = name or f"key-{secret[-4:]}"
        self.max_requests = max_requests
        self.quota_period = quota_period if quota_period > 0 else 3600.0
        self._clock: Callable[[], float] = clock or time.monotonic
        self._lock = threading.Lock()
        self._used = 0
        self._reset_at = self._clock() + self.quota_period
        self._blocked_until: float | None = None

    def __repr__(self) -> str:
        return f"APIKey(name={self.name!r}, max_requests={self.max_requests!r})"

    def _roll_window(self, now: float) -> None:
        # caller holds the lock
        if now >= self._reset_at:
            self._used = 0
            self._reset_at = now + self.quota_period
        if self._blocked_until is not None and now >= self._blocked_until:
            self._blocked_until = None

    def _has_capacity(self) -> bool:
        if self._blocked_until is not None:
            return False
        return self.max_requests is None or self._used < self.max_requests

    def is_available(self) -> bool:
        with self._lock:
            self._roll_window(self._clock())
            return self._has_capacity()

    def available(self) -> int | None:
        with self._lock:
            self._roll_window(self._clock())
            if self._blocked_until is not None:
                return 0
            if self.max_requests is None:
                return None
            return max(0, self.max_requests - self._used)

    def try_acquire(self) -> bool:
        with self._lock:
            self._roll_window(self._clock())
            if not self._has_capacity():
                return False
            self._used += 1
            return True

    def mark_rate_limited(self, retry_after_seconds: float | None = None) -> None:
        with self._lock:
            now = self._clock()
            if retry_after_seconds is not None and retry_after_seconds > 0:
                self._blocked_until = now + retry_after_seconds
            else:
                self._blocked_until = self._reset_at
            if self.max_requests is not None:
                self._used = self.max_requests

    def reset(self) -> None:
        with self._lock:
            self._used = 0
            self._blocked_until = None
            self._reset_at = self._clock() + self.quota_period

    def snapshot(self) -> KeyUsage:
        with self._lock:
            self._roll_window(self._clock())
            available = None if self.max_requests is None else max(0, self.max_requests - self._used)
            if self._blocked_until is not None:
                available = 0
            return KeyUsage(
                name=self.name,
                used=self._used,
                available=available,
                max_requests=self.max_requests,
                reset_at=self._reset_at,
                blocked_until=self._blocked_until,
            )


class KeyPool:
    """Ordered set of keys for one provider."""

    def __init__(self, keys: Iterable[APIKey]):
        self._keys = list(keys)
        self._lock = threading.Lock()
        self._last_index = -1

    @classmethod
    def from_secrets(
        cls,
        secrets: Iterable[str],
        *,
        max_requests: int | None = None,
        quota_period: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> "KeyPool":
        return cls(
            APIKey(s, max_requests=max_requests, quota_period=quota_period, clock=clock)
            for s in secrets
            if s
        )

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> list[APIKey]:
        return list(self._keys)

    def candidates(self) -> Iterator[tuple[int, APIKey]]:
        """Yield (index, key) in configured order for every key that grants a request."""
        for index, key in enumerate(self._keys):
            if key.try_acquire():
                yield index, key

    def next_key(self) -> APIKey | None:
        """Round-robin allocation starting after the last key handed out."""
        with self._lock:
            if not self._keys:
                return None
            start = (self._last_index + 1) % len(self._keys)
            for offset in range(len(self._keys)):
                index = (start + offset) % len(self._keys)
                if self._keys[index].try_acquire():
                    self._last_index = index
                    return self._keys[index]
            return None

    def optimal_key(self) -> APIKey | None:
        """Allocate the key with the most remaining requests; unlimited keys rank first."""
        with self._lock:
            ranked: list[tuple[float, int]] = []
            for index, key in enumerate(self._keys):
                remaining = key.available()
                score = float("inf") if remaining is None else float(remaining)
                if score > 0:
                    ranked.append((score, index))
            ranked.sort(key=lambda item: (-item[0], item[1]))
            for _, index in ranked:
                if self._keys[index].try_acquire():
                    self._last_index = index
                    return self._keys[index]
            return None

    def usage(self) -> list[KeyUsage]:
        return [k.snapshot() for k in self._keys]

    def reset_usage(self) -> None:
        for key in self._keys:
            key.reset()

    def secrets(self) -> list[str]:
        return [k.secret for k in self._keys]
