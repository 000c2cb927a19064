import threading
import time

from spokable.assembler import assemble
from spokable.chunker import chunk_text
from spokable.credentials import CredentialSet
from spokable.models import BatchOutcome, BatchState, ErrorKind
from spokable.rate_limiter import RateLimiter
from spokable.scheduler import BatchScheduler, SchedulerCallbacks


class DummyPolicy:
    """Stands in for the retry policy: every batch succeeds unless ``behaviour`` says otherwise."""

    def __init__(self, behaviour=None):
        self.behaviour = behaviour
        self.calls = []
        self._lock = threading.Lock()

    def run(self, batch, models, credentials, max_retries=None, base_delay=None, *, before_attempt=None):
        with self._lock:
            self.calls.append(batch.sequence_number)
            call_index = len(self.calls)
        if before_attempt is not None:
            before_attempt()
        if self.behaviour is not None:
            return self.behaviour(batch, call_index)
        return BatchOutcome(success=True, text=f"out-{batch.sequence_number}", model=models[0])


def _batches(count):
    return chunk_text("x" * (400 * count), 100, 0)


def _scheduler(policy, *, turbo=False, concurrency=3, rate_limiter=None):
    return BatchScheduler(
        policy,
        models=["model-a"],
        credentials=CredentialSet(["key"]),
        rate_limiter=rate_limiter,
        max_concurrency=concurrency,
        turbo_mode=turbo,
    )


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_single_worker_dispatches_in_sequence_order():
    batches = _batches(5)
    policy = DummyPolicy()
    started = []
    callbacks = SchedulerCallbacks(on_batch_start=lambda batch, worker: started.append(batch.sequence_number))

    result = _scheduler(policy).process_batches(list(reversed(batches)), callbacks=callbacks)

    assert started == [1, 2, 3, 4, 5]
    assert policy.calls == [1, 2, 3, 4, 5]
    assert result.stats.successful == 5
    assert result.stats.success_rate == 100.0


def test_turbo_off_forces_one_worker():
    result = _scheduler(DummyPolicy(), turbo=False, concurrency=4).process_batches(_batches(6))

    assert {status.worker_id for status in result.statuses} == {0}


def test_every_batch_runs_exactly_once_with_many_workers():
    batches = _batches(25)
    policy = DummyPolicy()

    result = _scheduler(policy, turbo=True, concurrency=4).process_batches(batches)

    assert sorted(policy.calls) == list(range(1, 26))
    assert set(result.completed) == {batch.id for batch in batches}
    assert result.failed == {}
    assert result.not_processed == []
    assert all(status.state is BatchState.SUCCESS for status in result.statuses)


def test_cancel_lets_in_flight_batches_finish_and_leaves_rest_pending():
    batches = _batches(10)
    in_flight = threading.Semaphore(0)
    release = threading.Event()

    def blocking(batch, call_index):
        in_flight.release()
        release.wait(5)
        return BatchOutcome(success=True, text="done", model="model-a")

    scheduler = _scheduler(DummyPolicy(blocking), turbo=True, concurrency=3)
    holder = {}
    runner = threading.Thread(target=lambda: holder.update(result=scheduler.process_batches(batches)))
    runner.start()
    for _ in range(3):
        assert in_flight.acquire(timeout=5)
    scheduler.cancel()
    release.set()
    runner.join(5)

    result = holder["result"]
    assert result.cancelled
    assert len(result.completed) == 3
    assert [batch.sequence_number for batch in result.not_processed] == [4, 5, 6, 7, 8, 9, 10]
    pending = [status for status in result.statuses if status.state is BatchState.PENDING]
    assert len(pending) == 7
    assert result.stats.not_processed == 7


def test_pause_holds_the_queue_until_resume():
    batches = _batches(5)
    first_started = threading.Event()
    release_first = threading.Event()

    def gated(batch, call_index):
        if call_index == 1:
            first_started.set()
            release_first.wait(5)
        return BatchOutcome(success=True, text="ok", model="model-a")

    scheduler = _scheduler(DummyPolicy(gated))
    holder = {}
    runner = threading.Thread(target=lambda: holder.update(result=scheduler.process_batches(batches)))
    runner.start()
    assert first_started.wait(5)
    scheduler.pause()
    release_first.set()

    assert _wait_until(lambda: scheduler.status()["completed"] == 1)
    time.sleep(0.05)
    snapshot = scheduler.status()
    assert snapshot["completed"] == 1
    assert snapshot["queue_size"] == 4
    assert snapshot["paused"]

    scheduler.resume()
    runner.join(5)
    assert holder["result"].stats.successful == 5


def test_cancel_while_paused_wakes_workers():
    batches = _batches(4)
    first_started = threading.Event()
    release_first = threading.Event()

    def gated(batch, call_index):
        if call_index == 1:
            first_started.set()
            release_first.wait(5)
        return BatchOutcome(success=True, text="ok", model="model-a")

    scheduler = _scheduler(DummyPolicy(gated))
    holder = {}
    runner = threading.Thread(target=lambda: holder.update(result=scheduler.process_batches(batches)))
    runner.start()
    assert first_started.wait(5)
    scheduler.pause()
    release_first.set()
    assert _wait_until(lambda: scheduler.status()["completed"] == 1)
    scheduler.cancel()
    runner.join(5)

    assert not runner.is_alive()
    assert holder["result"].stats.not_processed == 3


def test_rate_limit_failures_send_extra_workers_home():
    batches = _batches(10)
    start_barrier = threading.Barrier(3, timeout=5)
    fail_barrier = threading.Barrier(3, timeout=5)

    def rate_limited(batch, call_index):
        if call_index <= 3:
            start_barrier.wait()
        return BatchOutcome(success=False, error="429: quota", error_kind=ErrorKind.RATE_LIMITED)

    failures = []
    lock = threading.Lock()

    def on_fail(batch, status, worker_id):
        with lock:
            failures.append(batch.sequence_number)
            count = len(failures)
        if count <= 3:
            fail_barrier.wait()

    scheduler = _scheduler(DummyPolicy(rate_limited), turbo=True, concurrency=3)
    result = scheduler.process_batches(batches, callbacks=SchedulerCallbacks(on_batch_fail=on_fail))

    assert result.stats.failed == 10
    by_sequence = {status.sequence_number: status for status in result.statuses}
    assert {by_sequence[n].worker_id for n in (1, 2, 3)} == {0, 1, 2}
    assert all(by_sequence[n].worker_id == 0 for n in range(4, 11))


def test_retry_failed_runs_serially_and_keeps_successes():
    batches = _batches(5)
    attempts = {}
    lock = threading.Lock()

    def flaky(batch, call_index):
        with lock:
            attempts[batch.sequence_number] = attempts.get(batch.sequence_number, 0) + 1
            seen = attempts[batch.sequence_number]
        if batch.sequence_number in (2, 4) and seen == 1:
            return BatchOutcome(success=False, error="500: busy", error_kind=ErrorKind.SERVER_ERROR)
        return BatchOutcome(success=True, text=f"out-{batch.sequence_number}", model="model-a")

    scheduler = _scheduler(DummyPolicy(flaky), turbo=True, concurrency=3)
    first = scheduler.process_batches(batches)
    assert sorted(status.sequence_number for status in first.failed.values()) == [2, 4]

    retried = []
    second = scheduler.retry_failed(SchedulerCallbacks(on_batch_start=lambda b, w: retried.append((b.sequence_number, w))))

    assert retried == [(2, 0), (4, 0)]
    assert second.failed == {}
    assert second.stats.successful == 5
    assert attempts == {1: 1, 2: 2, 3: 1, 4: 2, 5: 1}


def test_retry_failed_with_nothing_failed_is_a_no_op():
    scheduler = _scheduler(DummyPolicy())
    scheduler.process_batches(_batches(2))

    result = scheduler.retry_failed()

    assert result.stats.successful == 2
    assert result.failed == {}


def test_raising_callback_does_not_stop_workers():
    def explode(*args):
        raise RuntimeError("ui went away")

    callbacks = SchedulerCallbacks(on_batch_start=explode, on_batch_complete=explode)

    result = _scheduler(DummyPolicy(), turbo=True).process_batches(_batches(6), callbacks=callbacks)

    assert result.stats.successful == 6


def test_rate_limiter_is_consulted_before_each_attempt():
    limiter = RateLimiter(0.0)

    _scheduler(DummyPolicy(), turbo=True, rate_limiter=limiter).process_batches(_batches(7))

    assert limiter.state().request_count == 7


def test_pause_before_start_holds_every_batch_until_resume():
    batches = _batches(5)
    policy = DummyPolicy()
    scheduler = _scheduler(policy)
    scheduler.pause()

    holder = {}
    runner = threading.Thread(target=lambda: holder.update(result=scheduler.process_batches(batches)))
    runner.start()
    time.sleep(0.1)

    assert policy.calls == []
    snapshot = scheduler.status()
    assert snapshot["paused"]
    assert snapshot["queue_size"] == 5

    scheduler.resume()
    runner.join(5)
    assert not runner.is_alive()
    assert holder["result"].stats.successful == 5


def test_cancel_before_start_dispatches_nothing():
    batches = _batches(4)
    policy = DummyPolicy()
    scheduler = _scheduler(policy, turbo=True)
    scheduler.cancel()

    result = scheduler.process_batches(batches)

    assert policy.calls == []
    assert result.cancelled
    assert result.stats.not_processed == 4
    assert [batch.sequence_number for batch in result.not_processed] == [1, 2, 3, 4]


def test_reset_controls_clears_pending_pause_and_cancel():
    batches = _batches(2)
    scheduler = _scheduler(DummyPolicy())
    scheduler.pause()
    scheduler.cancel()

    scheduler.reset_controls()
    result = scheduler.process_batches(batches)

    assert not scheduler.is_paused
    assert not result.cancelled
    assert result.stats.successful == 2


def test_turbo_results_reassemble_in_sequence_order_when_finishing_in_reverse():
    batches = _batches(3)
    done = {batch.sequence_number: threading.Event() for batch in batches}
    finished = []

    def finish_after_next(batch, call_index):
        # Batch n waits for batch n + 1, so the last batch finishes first.
        successor = done.get(batch.sequence_number + 1)
        if successor is not None:
            successor.wait(5)
        return BatchOutcome(success=True, text=f"out-{batch.sequence_number}", model="model-a")

    def on_complete(batch, status, worker_id):
        finished.append(batch.sequence_number)
        done[batch.sequence_number].set()

    scheduler = _scheduler(DummyPolicy(finish_after_next), turbo=True, concurrency=3)
    result = scheduler.process_batches(batches, callbacks=SchedulerCallbacks(on_batch_complete=on_complete))

    assert finished == [3, 2, 1]
    assert assemble(batches, result.completed) == "out-1\n\nout-2\n\nout-3"
