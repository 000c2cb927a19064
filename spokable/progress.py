"""Progress tracking for long-running jobs.

The tracker never drives work; it only derives percentage, elapsed time (paused
intervals excluded), a linear ETA and a per-batch status histogram from the events it
is fed, and pushes a :class:`ProgressStatus` snapshot to every subscriber after each
change.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

STAGE_INITIALIZING = "initializing"
STAGE_BATCHING = "batching"
STAGE_PROCESSING = "processing"
STAGE_RETRYING = "retrying"
STAGE_ASSEMBLING = "assembling"
STAGE_COMPLETE = "complete"
STAGE_FAILED = "failed"

HISTOGRAM_STATES = ("pending", "processing", "success", "failed")

Listener = Callable[["ProgressStatus"], None]


def format_duration(seconds: float) -> str:
    """Render a duration as ``"1h 2m 3s"``; sub-second values are shown in milliseconds."""
    if seconds < 1:
        return f"{int(round(max(0.0, seconds) * 1000))}ms"
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    parts: List[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def calculate_percentage(value: float, total: float) -> float:
    if not total:
        return 0.0
    return min(100.0, max(0.0, value / total * 100.0))


def estimate_eta(current: int, total: int, elapsed: float) -> Optional[float]:
    """Linear extrapolation of the remaining seconds; ``None`` until the first step lands."""
    if current <= 0:
        return None
    if current >= total:
        return 0.0
    return elapsed * (total - current) / current


@dataclass
class ProgressStatus:
    stage: str
    current_step: int
    total_steps: int
    percentage: float
    elapsed: float
    eta: Optional[float]
    speed: Optional[float]
    paused: bool
    is_complete: bool
    is_failed: bool
    batch_stats: Dict[str, int] = field(default_factory=dict)
    error_count: int = 0

    @property
    def eta_text(self) -> str:
        if self.eta is None:
            return "Calculating..."
        if self.current_step >= self.total_steps:
            return "Complete"
        return format_duration(self.eta)

    @property
    def speed_text(self) -> str:
        if self.speed is None:
            return "-"
        return f"{self.speed:.2f} batches/sec"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "percentage": round(self.percentage, 2),
            "elapsed_seconds": round(self.elapsed, 3),
            "elapsed": format_duration(self.elapsed),
            "eta_seconds": None if self.eta is None else round(self.eta, 3),
            "eta": self.eta_text,
            "speed": self.speed_text,
            "paused": self.paused,
            "is_complete": self.is_complete,
            "is_failed": self.is_failed,
            "batch_stats": dict(self.batch_stats),
            "error_count": self.error_count,
        }


class ProgressTracker:
    def __init__(self, total_steps: int = 0, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self.total_steps = total_steps
        self.current_step = 0
        self.stage = STAGE_INITIALIZING
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.paused = False
        self.pause_time: Optional[float] = None
        self.total_paused = 0.0
        self._batch_statuses: Dict[str, Dict[str, Any]] = {}
        self._errors: List[Dict[str, Any]] = []

    # Mutations ---------------------------------------------------------
    def start(self, total_steps: int) -> None:
        with self._lock:
            self.total_steps = max(0, int(total_steps))
            self.current_step = 0
            self.start_time = self._clock()
            self.end_time = None
            self.paused = False
            self.pause_time = None
            self.total_paused = 0.0
            self._errors = []
        self._notify()

    def update_step(self, step: int, stage: Optional[str] = None) -> None:
        with self._lock:
            self.current_step = max(0, int(step))
            if stage:
                self.stage = stage
        self._notify()

    def increment(self, stage: Optional[str] = None) -> None:
        with self._lock:
            self.current_step += 1
            if stage:
                self.stage = stage
        self._notify()

    def set_stage(self, stage: str) -> None:
        with self._lock:
            self.stage = stage
        self._notify()

    def update_batch_status(self, batch_id: str, status: str, **data: Any) -> None:
        with self._lock:
            self._batch_statuses[batch_id] = {"status": status, "timestamp": self._clock(), **data}
        self._notify()

    def add_error(self, message: str, **details: Any) -> None:
        with self._lock:
            self._errors.append({"message": message, "timestamp": self._clock(), **details})
        self._notify()

    def pause(self) -> None:
        with self._lock:
            if self.paused:
                return
            self.paused = True
            self.pause_time = self._clock()
        self._notify()

    def resume(self) -> None:
        with self._lock:
            if not self.paused or self.pause_time is None:
                return
            self.total_paused += self._clock() - self.pause_time
            self.paused = False
            self.pause_time = None
        self._notify()

    def complete(self) -> None:
        with self._lock:
            self._close_pause()
            self.current_step = self.total_steps
            self.end_time = self._clock()
            self.stage = STAGE_COMPLETE
        self._notify()

    def fail(self, reason: str) -> None:
        with self._lock:
            self._close_pause()
            self.end_time = self._clock()
            self.stage = STAGE_FAILED
            self._errors.append({"message": reason, "timestamp": self.end_time})
        self._notify()

    def reset(self) -> None:
        with self._lock:
            self.total_steps = 0
            self.current_step = 0
            self.stage = STAGE_INITIALIZING
            self.start_time = None
            self.end_time = None
            self.paused = False
            self.pause_time = None
            self.total_paused = 0.0
            self._batch_statuses.clear()
            self._errors = []
        self._notify()

    # Queries -----------------------------------------------------------
    def get_elapsed(self) -> float:
        with self._lock:
            if self.start_time is None:
                return 0.0
            end = self.end_time if self.end_time is not None else self._clock()
            elapsed = end - self.start_time - self.total_paused
            if self.paused and self.pause_time is not None:
                elapsed -= max(0.0, end - self.pause_time)
            return max(0.0, elapsed)

    def get_status(self) -> ProgressStatus:
        with self._lock:
            elapsed = self.get_elapsed()
            histogram = {state: 0 for state in HISTOGRAM_STATES}
            for entry in self._batch_statuses.values():
                state = entry.get("status")
                if state in histogram:
                    histogram[state] += 1
            speed = self.current_step / elapsed if self.current_step and elapsed > 0 else None
            return ProgressStatus(
                stage=self.stage,
                current_step=self.current_step,
                total_steps=self.total_steps,
                percentage=calculate_percentage(self.current_step, self.total_steps),
                elapsed=elapsed,
                eta=estimate_eta(self.current_step, self.total_steps, elapsed),
                speed=speed,
                paused=self.paused,
                is_complete=self.stage == STAGE_COMPLETE or (self.total_steps > 0 and self.current_step >= self.total_steps),
                is_failed=self.stage == STAGE_FAILED,
                batch_stats=histogram,
                error_count=len(self._errors),
            )

    def get_batches(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [{"id": batch_id, **entry} for batch_id, entry in self._batch_statuses.items()]

    def get_errors(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._errors]

    def export(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self.get_status().to_dict(),
                "batches": self.get_batches(),
                "errors": self.get_errors(),
                "timeline": {
                    "start_time": self.start_time,
                    "end_time": self.end_time,
                    "pause_time": self.pause_time,
                    "total_paused": self.total_paused,
                },
            }

    # Observers ---------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        status = self.get_status()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Error in progress listener.")

    def _close_pause(self) -> None:
        if self.paused and self.pause_time is not None:
            self.total_paused += self._clock() - self.pause_time
        self.paused = False
        self.pause_time = None
