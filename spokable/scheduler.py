"""Bounded worker pool that drains the batch queue through the retry policy."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from .credentials import CredentialSet
from .models import Batch, BatchOutcome, BatchState, BatchStatus, ErrorKind
from .rate_limiter import RateLimiter
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

# More rate-limited failures than this in one pass sends the extra workers home.
RATE_LIMIT_FAILURE_THRESHOLD = 2

BatchCallback = Callable[[Batch, int], None]
OutcomeCallback = Callable[[Batch, BatchStatus, int], None]


@dataclass
class SchedulerCallbacks:
    on_batch_start: Optional[BatchCallback] = None
    on_batch_complete: Optional[OutcomeCallback] = None
    on_batch_fail: Optional[OutcomeCallback] = None


@dataclass
class SchedulerStats:
    total: int
    successful: int
    failed: int
    not_processed: int
    duration_seconds: float

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.successful / self.total * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "not_processed": self.not_processed,
            "success_rate": round(self.success_rate, 2),
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class SchedulerResult:
    completed: Dict[str, BatchStatus]
    failed: Dict[str, BatchStatus]
    not_processed: List[Batch]
    stats: SchedulerStats
    cancelled: bool = False
    statuses: List[BatchStatus] = field(default_factory=list)


class BatchScheduler:
    def __init__(
        self,
        policy: RetryPolicy,
        *,
        models: Sequence[str],
        credentials: CredentialSet,
        rate_limiter: Optional[RateLimiter] = None,
        max_concurrency: int = 3,
        turbo_mode: bool = False,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.models = tuple(models)
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.max_concurrency = max(1, int(max_concurrency))
        self.turbo_mode = turbo_mode
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._cancel_event = threading.Event()
        self._paused = False
        self._queue: Deque[Batch] = deque()
        self._batches: Dict[str, Batch] = {}
        self._statuses: Dict[str, BatchStatus] = {}
        self._processing: Dict[str, BatchStatus] = {}
        self._completed: Dict[str, BatchStatus] = {}
        self._failed: Dict[str, BatchStatus] = {}
        self._rate_limit_failures = 0

    # Controls ----------------------------------------------------------
    def pause(self) -> None:
        with self._cond:
            self._paused = True
        logger.info("Batch processing paused")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Batch processing resumed")

    def cancel(self) -> None:
        self._cancel_event.set()
        with self._cond:
            self._cond.notify_all()
        logger.info("Batch processing cancelled")

    def reset_controls(self) -> None:
        """Clear pause and cancel ahead of a new job; passes never clear them on their own."""
        self._cancel_event.clear()
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    @property
    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "queue_size": len(self._queue),
                "processing": len(self._processing),
                "completed": len(self._completed),
                "failed": len(self._failed),
                "paused": self._paused,
                "cancelled": self._cancel_event.is_set(),
            }

    # Passes ------------------------------------------------------------
    def process_batches(
        self,
        batches: Sequence[Batch],
        concurrency: Optional[int] = None,
        callbacks: Optional[SchedulerCallbacks] = None,
    ) -> SchedulerResult:
        ordered = sorted(batches, key=lambda item: item.sequence_number)
        with self._cond:
            self._queue = deque(ordered)
            self._batches = {batch.id: batch for batch in ordered}
            self._statuses = {
                batch.id: BatchStatus(batch_id=batch.id, sequence_number=batch.sequence_number) for batch in ordered
            }
            self._processing.clear()
            self._completed.clear()
            self._failed.clear()
        workers = self._resolve_concurrency(concurrency, len(ordered))
        logger.info("Starting batch processing: %s batches, concurrency: %s", len(ordered), workers)
        return self._run(workers, callbacks or SchedulerCallbacks())

    def retry_failed(self, callbacks: Optional[SchedulerCallbacks] = None) -> SchedulerResult:
        """Re-queue every failed batch and process them one at a time."""
        with self._cond:
            retry = sorted(
                (self._batches[batch_id] for batch_id in self._failed),
                key=lambda item: item.sequence_number,
            )
            for batch in retry:
                status = self._statuses[batch.id]
                status.state = BatchState.PENDING
                status.error = None
                status.error_kind = None
                status.worker_id = None
            self._failed.clear()
            self._queue = deque(retry)
        if not retry:
            return self._build_result(0.0)
        logger.info("Retrying %s failed batches", len(retry))
        return self._run(1, callbacks or SchedulerCallbacks())

    # Internals ---------------------------------------------------------
    def _resolve_concurrency(self, requested: Optional[int], batch_count: int) -> int:
        if not self.turbo_mode:
            return 1
        limit = self.max_concurrency if requested is None else max(1, int(requested))
        return max(1, min(limit, batch_count))

    def _run(self, workers: int, callbacks: SchedulerCallbacks) -> SchedulerResult:
        with self._cond:
            self._rate_limit_failures = 0
        started = self._clock()
        threads = [
            threading.Thread(
                target=self._worker,
                args=(worker_id, workers, callbacks),
                name=f"batch-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        result = self._build_result(self._clock() - started)
        logger.info("Batch processing complete: %s", result.stats.to_dict())
        return result

    def _worker(self, worker_id: int, pool_size: int, callbacks: SchedulerCallbacks) -> None:
        logger.debug("Worker %s started", worker_id)
        while True:
            batch = self._next_batch(worker_id)
            if batch is None:
                break
            self._emit(callbacks.on_batch_start, batch, worker_id)
            try:
                outcome = self.policy.run(
                    batch,
                    self.models,
                    self.credentials,
                    self.max_retries,
                    self.base_delay,
                    before_attempt=self._pace,
                )
            except Exception as exc:  # pragma: no cover
                logger.exception("Batch %s crashed", batch.sequence_number)
                outcome = BatchOutcome(success=False, error=str(exc))
            status = self._record(batch, outcome, worker_id)
            if status.state is BatchState.SUCCESS:
                self._emit(callbacks.on_batch_complete, batch, status, worker_id)
            else:
                logger.error("Batch %s failed: %s", batch.sequence_number, status.error)
                self._emit(callbacks.on_batch_fail, batch, status, worker_id)
            if pool_size > 1 and worker_id > 0 and self._rate_limited():
                logger.warning("Rate limits detected, worker %s stopping to reduce parallelism", worker_id)
                break
        logger.debug("Worker %s finished", worker_id)

    def _next_batch(self, worker_id: int) -> Optional[Batch]:
        with self._cond:
            while self._paused and not self._cancel_event.is_set():
                self._cond.wait()
            if self._cancel_event.is_set() or not self._queue:
                return None
            batch = self._queue.popleft()
            status = self._statuses[batch.id]
            status.state = BatchState.PROCESSING
            status.worker_id = worker_id
            status.started_at = self._clock()
            status.finished_at = None
            self._processing[batch.id] = status
            return batch

    def _record(self, batch: Batch, outcome: BatchOutcome, worker_id: int) -> BatchStatus:
        with self._cond:
            status = self._processing.pop(batch.id, None) or self._statuses[batch.id]
            status.finished_at = self._clock()
            status.worker_id = worker_id
            status.retry_count += outcome.retries
            status.degraded = outcome.degraded
            if outcome.success:
                status.state = BatchState.SUCCESS
                status.output = outcome.text
                status.model = outcome.model
                self._completed[batch.id] = status
            else:
                status.state = BatchState.FAILED
                status.error = outcome.error or "Unknown error"
                status.error_kind = outcome.error_kind
                self._failed[batch.id] = status
                if outcome.error_kind is ErrorKind.RATE_LIMITED:
                    self._rate_limit_failures += 1
            return replace(status)

    def _rate_limited(self) -> bool:
        with self._cond:
            return self._rate_limit_failures > RATE_LIMIT_FAILURE_THRESHOLD

    def _pace(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.await_slot()

    def _build_result(self, duration: float) -> SchedulerResult:
        with self._cond:
            completed = {batch_id: replace(status) for batch_id, status in self._completed.items()}
            failed = {batch_id: replace(status) for batch_id, status in self._failed.items()}
            not_processed = [
                self._batches[batch_id]
                for batch_id, status in self._statuses.items()
                if status.state is BatchState.PENDING
            ]
            statuses = sorted((replace(status) for status in self._statuses.values()), key=lambda s: s.sequence_number)
            total = len(self._statuses)
        stats = SchedulerStats(
            total=total,
            successful=len(completed),
            failed=len(failed),
            not_processed=len(not_processed),
            duration_seconds=duration,
        )
        return SchedulerResult(
            completed=completed,
            failed=failed,
            not_processed=sorted(not_processed, key=lambda item: item.sequence_number),
            stats=stats,
            cancelled=self._cancel_event.is_set(),
            statuses=statuses,
        )

    @staticmethod
    def _emit(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Scheduler callback failed.")
