"""One transformation job: chunk, schedule, retry, assemble and report."""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from .assembler import AssemblySummary, assemble, summarize
from .chunker import assign_images_to_batches, chunk_text
from .config import EngineConfig
from .credentials import CredentialSet
from .gemini_client import GeminiClient, GeminiSettings
from .models import Batch, BatchStatus, ImagePart
from .progress import (
    STAGE_ASSEMBLING,
    STAGE_BATCHING,
    STAGE_PROCESSING,
    STAGE_RETRYING,
    ProgressTracker,
)
from .prompts import PromptBuilder
from .rate_limiter import RateLimiter
from .retry_policy import RetryPolicy
from .scheduler import BatchScheduler, SchedulerCallbacks, SchedulerResult, SchedulerStats
from .token_utils import estimate_tokens

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str], None]

SECONDS_PER_BATCH = 5
CANCELLED_REASON = "Cancelled by user"


@dataclass
class ExtractedDocument:
    text: str
    images: List[ImagePart] = field(default_factory=list)
    source: Optional[Path] = None


class DocumentExtractor(Protocol):
    def extract(self, path: Path) -> ExtractedDocument:
        ...


class DocumentRenderer(Protocol):
    def render(self, text: str, summary: AssemblySummary, destination: Path) -> Path:
        ...


class PlainTextExtractor:
    encoding = "utf-8"

    def extract(self, path: Path) -> ExtractedDocument:
        text = path.read_text(encoding=self.encoding, errors="replace")
        return ExtractedDocument(text=text, source=path)


class PlainTextRenderer:
    def render(self, text: str, summary: AssemblySummary, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(text, encoding="utf-8")
        return destination


@dataclass
class ProcessingEstimate:
    batches: int
    estimated_seconds: int
    tokens_per_batch: int
    total_tokens: int

    @property
    def estimated_minutes(self) -> int:
        return math.ceil(self.estimated_seconds / 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batches": self.batches,
            "estimated_seconds": self.estimated_seconds,
            "estimated_minutes": self.estimated_minutes,
            "tokens_per_batch": self.tokens_per_batch,
            "total_tokens": self.total_tokens,
        }


def estimate_processing(text: str, config: EngineConfig) -> ProcessingEstimate:
    """Rough sizing of a job before any request is sent."""
    batches = chunk_text(text, config.batch_size_tokens, config.overlap_tokens)
    return ProcessingEstimate(
        batches=len(batches),
        estimated_seconds=len(batches) * SECONDS_PER_BATCH,
        tokens_per_batch=config.batch_size_tokens,
        total_tokens=estimate_tokens(text),
    )


@dataclass
class JobReport:
    output_text: str
    summary: AssemblySummary
    stats: SchedulerStats
    statuses: List[BatchStatus] = field(default_factory=list)
    cancelled: bool = False
    failure_reason: Optional[str] = None
    retried: bool = False
    progress: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    log_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.failure_reason is None

    def to_dict(self) -> Dict[str, Any]:
        summary = self.summary.to_dict()
        summary["not_processed"] = self.stats.not_processed
        summary["degraded"] = sum(1 for status in self.statuses if status.degraded)
        return {
            "status": "complete" if self.success else "failed",
            "failure_reason": self.failure_reason,
            "cancelled": self.cancelled,
            "retried": self.retried,
            "settings": dict(self.settings),
            "summary": summary,
            "batches": [status.to_dict() for status in self.statuses],
            "progress": self.progress,
            "log_path": str(self.log_path) if self.log_path else None,
        }

    def write_report(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        return path


class TransformJob:
    def __init__(
        self,
        config: EngineConfig,
        client: Optional[GeminiClient] = None,
        *,
        log_callback: Optional[LogCallback] = None,
        output_dir: Optional[Path] = None,
        tracker: Optional[ProgressTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config.validate()
        self.client = client or GeminiClient(
            GeminiSettings(base_url=config.base_url, timeout=config.timeout, system_prompt=config.system_prompt)
        )
        self.credentials = CredentialSet(config.credentials)
        self.rate_limiter = RateLimiter(config.rate_limit_delay, clock=clock, sleep=sleep)
        self.policy = RetryPolicy(
            self.client,
            max_retries=config.max_retries,
            base_delay=config.retry_delay,
            rate_limit_penalty=config.rate_limit_delay,
            timeout=config.timeout,
            generation_config=config.generation,
            prompt_builder=PromptBuilder(config.transformation_prompt, config.image_prompt),
            include_images=config.include_images,
            sleep=sleep,
        )
        self.scheduler = BatchScheduler(
            self.policy,
            models=config.models,
            credentials=self.credentials,
            rate_limiter=self.rate_limiter,
            max_concurrency=config.max_concurrency,
            turbo_mode=config.turbo_mode,
            clock=clock,
        )
        self.tracker = tracker or ProgressTracker(clock=clock)
        self._log_callback = log_callback
        self._total_batches = 0
        self._finished_lock = threading.Lock()
        self._finished_ids: Set[str] = set()
        self._log_path: Optional[Path] = None
        if output_dir is not None:
            logs_dir = output_dir / "logs"
            logs_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._log_path = logs_dir / f"job_{timestamp}.log"

    @property
    def log_path(self) -> Optional[Path]:
        return self._log_path

    # Controls ----------------------------------------------------------
    def pause(self) -> None:
        self.scheduler.pause()
        self.tracker.pause()
        self._log("info", "Processing paused")

    def resume(self) -> None:
        self.scheduler.resume()
        self.tracker.resume()
        self._log("info", "Processing resumed")

    def cancel(self) -> None:
        self.scheduler.cancel()
        self._log("warning", "Cancellation requested; in-flight batches will finish first")

    # Run ---------------------------------------------------------------
    def run(self, text: str, images: Optional[Sequence[ImagePart]] = None) -> JobReport:
        """Run one job. A pause or cancel issued before the call applies to it; both are cleared on return."""
        try:
            return self._run(text, images)
        finally:
            self.scheduler.reset_controls()

    def _run(self, text: str, images: Optional[Sequence[ImagePart]]) -> JobReport:
        with self._finished_lock:
            self._finished_ids.clear()
        self.tracker.reset()
        self.tracker.set_stage(STAGE_BATCHING)
        batches = chunk_text(text, self.config.batch_size_tokens, self.config.overlap_tokens)
        if images and self.config.include_images:
            batches = assign_images_to_batches(batches, list(images))
            self._log("info", f"Attached {len(images)} image(s) across {len(batches)} batches")
        self._total_batches = len(batches)
        self._log(
            "info",
            f"Created {len(batches)} batches ({self.config.batch_size_tokens} tokens, "
            f"{self.config.overlap_tokens} overlap)",
        )
        self._log(
            "info",
            f"Using API key {self.credentials.current_key_redacted()}"
            f"{' (backup configured)' if self.credentials.has_backup else ''}; "
            f"models: {', '.join(self.config.models)}",
        )
        self.tracker.start(len(batches))
        if self.scheduler.is_paused:
            self.tracker.pause()
        self.tracker.set_stage(STAGE_PROCESSING)
        for batch in batches:
            self.tracker.update_batch_status(batch.id, "pending", sequence_number=batch.sequence_number)

        callbacks = SchedulerCallbacks(
            on_batch_start=self._on_batch_start,
            on_batch_complete=self._on_batch_complete,
            on_batch_fail=self._on_batch_fail,
        )
        result = self.scheduler.process_batches(batches, callbacks=callbacks)
        retried = False
        if result.failed and self.config.auto_retry and not self._is_cancelled(result):
            retried = True
            self.tracker.set_stage(STAGE_RETRYING)
            self._log("warning", f"Retrying {len(result.failed)} failed batch(es) one at a time")
            result = self.scheduler.retry_failed(callbacks)
        return self._finish(batches, result, retried)

    def _finish(self, batches: List[Batch], result: SchedulerResult, retried: bool) -> JobReport:
        self.tracker.set_stage(STAGE_ASSEMBLING)
        output_text = assemble(batches, result.completed)
        summary = summarize(batches, result.completed, result.failed)
        cancelled = self._is_cancelled(result)
        failure_reason: Optional[str] = None
        if cancelled:
            failure_reason = CANCELLED_REASON
        elif batches and summary.success_rate < self.config.min_success_rate:
            failure_reason = (
                f"Success rate {summary.success_rate:.1f}% is below the required "
                f"{self.config.min_success_rate:.1f}%"
            )
        if failure_reason:
            self.tracker.fail(failure_reason)
            self._log("error", f"Job failed: {failure_reason}")
        else:
            self.tracker.complete()
            self._log(
                "success",
                f"Job complete: {summary.success}/{summary.total} batches succeeded "
                f"({summary.success_rate:.1f}%)",
            )
        for item in summary.failed:
            self._log("warning", f"Batch {item.sequence_number} missing from output: {item.error}")
        return JobReport(
            output_text=output_text,
            summary=summary,
            stats=result.stats,
            statuses=result.statuses,
            cancelled=cancelled,
            failure_reason=failure_reason,
            retried=retried,
            progress=self.tracker.export(),
            settings=self._settings_snapshot(),
            log_path=self._log_path,
        )

    def _is_cancelled(self, result: SchedulerResult) -> bool:
        return result.cancelled or self.scheduler.is_cancelled

    def _settings_snapshot(self) -> Dict[str, Any]:
        config = self.config
        return {
            "models": list(config.models),
            "batch_size_tokens": config.batch_size_tokens,
            "overlap_tokens": config.overlap_tokens,
            "max_retries": config.max_retries,
            "retry_delay": config.retry_delay,
            "rate_limit_delay": config.rate_limit_delay,
            "turbo_mode": config.turbo_mode,
            "concurrency": config.effective_concurrency,
            "auto_retry": config.auto_retry,
            "backup_key": len(self.credentials) > 1,
        }

    # Scheduler callbacks -----------------------------------------------
    def _on_batch_start(self, batch: Batch, worker_id: int) -> None:
        self.tracker.update_batch_status(
            batch.id, "processing", sequence_number=batch.sequence_number, worker_id=worker_id
        )
        self._log("info", f"Processing batch {batch.sequence_number}/{self._total_batches} (worker {worker_id})")

    def _on_batch_complete(self, batch: Batch, status: BatchStatus, worker_id: int) -> None:
        self.tracker.update_batch_status(
            batch.id,
            "success",
            sequence_number=batch.sequence_number,
            worker_id=worker_id,
            model=status.model,
            retries=status.retry_count,
        )
        self._mark_finished(batch.id)
        note = " (text only)" if status.degraded else ""
        self._log("success", f"Batch {batch.sequence_number} done with {status.model}{note}")

    def _on_batch_fail(self, batch: Batch, status: BatchStatus, worker_id: int) -> None:
        self.tracker.update_batch_status(
            batch.id,
            "failed",
            sequence_number=batch.sequence_number,
            worker_id=worker_id,
            error=status.error,
        )
        self.tracker.add_error(f"Batch {batch.sequence_number}: {status.error}", batch_id=batch.id)
        self._mark_finished(batch.id)
        self._log("error", f"Batch {batch.sequence_number} failed: {status.error}")

    def _mark_finished(self, batch_id: str) -> None:
        # Counted at the first terminal outcome; a batch sent to the retry pass stays counted.
        with self._finished_lock:
            if batch_id in self._finished_ids:
                return
            self._finished_ids.add(batch_id)
        self.tracker.increment()

    # Logging -----------------------------------------------------------
    def _log(self, level: str, message: str) -> None:
        self._append_log_line(level, message)
        if self._log_callback:
            try:
                self._log_callback(level, message)
            except Exception:  # pragma: no cover
                logger.exception("Failed to emit log callback.")
        else:
            getattr(logger, level, logger.info)(message)

    def _append_log_line(self, level: str, message: str) -> None:
        if self._log_path is None:
            return
        timestamp = datetime.now().isoformat(timespec="seconds")
        line = f"{timestamp} [{level.upper()}] {message}\n"
        try:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            logger.exception("Failed to write job log.")
