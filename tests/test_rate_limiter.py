import threading

import pytest

from spokable.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def sleep(self, seconds):
        with self._lock:
            self.now += seconds


def test_first_request_does_not_wait():
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    assert limiter.await_slot() == 0
    assert limiter.state().request_count == 1
    assert limiter.state().last_request == 100.0


def test_back_to_back_requests_are_spaced():
    clock = FakeClock()
    limiter = RateLimiter(1.5, clock=clock, sleep=clock.sleep)

    limiter.await_slot()
    waited = limiter.await_slot()

    assert waited == pytest.approx(1.5)
    assert clock.now == pytest.approx(101.5)


def test_no_wait_once_interval_has_passed():
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    limiter.await_slot()
    clock.now += 5
    assert limiter.await_slot() == 0


def test_concurrent_callers_get_distinct_slots():
    clock = FakeClock()
    sleeps = []
    limiter = RateLimiter(1.0, clock=clock, sleep=sleeps.append)
    barrier = threading.Barrier(5)

    def worker():
        barrier.wait()
        limiter.await_slot()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # The clock never moves, so the reserved slots are 0, 1, 2, 3 and 4 seconds out.
    assert sorted(sleeps) == pytest.approx([1.0, 2.0, 3.0, 4.0])
    assert limiter.state().request_count == 5
    assert limiter.state().last_request == pytest.approx(104.0)


def test_per_call_interval_override_and_reset():
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    limiter.await_slot()
    assert limiter.await_slot(min_interval=0.25) == pytest.approx(0.25)

    limiter.reset()
    assert limiter.state().request_count == 0
    assert limiter.await_slot() == 0


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        RateLimiter(-1)
