import threading

import pytest

from llm_relay.keys import APIKey, KeyPool


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def test_unlimited_key_is_always_available():
    key = APIKey("sk-unlimited")
    for _ in range(100):
        assert key.try_acquire()
    assert key.available() is None
    assert key.name == "key-ited"


def test_quota_exhaustion_and_window_reset():
    clock = FakeClock()
    key = APIKey("sk-abc", max_requests=2, quota_period=60, clock=clock)
    assert key.try_acquire()
    assert key.try_acquire()
    assert not key.try_acquire()
    assert not key.is_available()
    assert key.available() == 0

    clock.t += 61
    assert key.is_available()
    assert key.available() == 2


def test_rate_limited_key_blocks_until_retry_after():
    clock = FakeClock()
    key = APIKey("sk-abc", clock=clock)
    key.mark_rate_limited(retry_after_seconds=5)
    assert not key.is_available()
    clock.t += 6
    assert key.try_acquire()


def test_rate_limited_without_retry_after_waits_for_window():
    clock = FakeClock()
    key = APIKey("sk-abc", max_requests=10, quota_period=30, clock=clock)
    key.mark_rate_limited()
    assert key.snapshot().available == 0
    clock.t += 31
    assert key.is_available()


def test_invalid_quota_rejected():
    with pytest.raises(ValueError):
        APIKey("sk", max_requests=0)


def test_concurrent_acquire_never_oversubscribes():
    key = APIKey("sk-shared", max_requests=50)
    granted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            if key.try_acquire():
                with lock:
                    granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(granted) == 50


def test_pool_candidates_preserve_order_and_skip_exhausted():
    exhausted = APIKey("sk-one", max_requests=1)
    assert exhausted.try_acquire()
    pool = KeyPool([exhausted, APIKey("sk-two"), APIKey("sk-three")])
    assert [i for i, _ in pool.candidates()] == [1, 2]


def test_pool_round_robin():
    pool = KeyPool.from_secrets(["a1", "b2", "c3"])
    picked = [pool.next_key().secret for _ in range(4)]
    assert picked == ["a1", "b2", "c3", "a1"]


def test_pool_optimal_prefers_most_remaining():
    low = APIKey("low", max_requests=2)
    high = APIKey("high", max_requests=10)
    pool = KeyPool([low, high])
    assert pool.optimal_key() is high
    assert pool.usage()[1].used == 1


def test_pool_returns_none_when_all_exhausted():
    pool = KeyPool.from_secrets(["only"], max_requests=1)
    assert pool.next_key() is not None
    assert pool.next_key() is None
    assert pool.optimal_key() is None
    pool.reset_usage()
    assert pool.next_key() is not None


def test_from_secrets_skips_blank():
    pool = KeyPool.from_secrets(["", "sk-real"])
    assert len(pool) == 1
    assert pool.secrets() == ["sk-real"]
