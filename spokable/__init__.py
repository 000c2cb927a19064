"""Batch engine that rewrites long documents into spoken-style text with Gemini."""

from .assembler import AssemblySummary, assemble, summarize
from .chunker import assign_images_to_batches, chunk_text
from .config import EngineConfig, load_engine_config
from .credentials import CredentialSet
from .gemini_client import GeminiClient, GeminiError, GeminiSettings
from .models import Batch, BatchOutcome, BatchState, BatchStatus, ErrorKind, GenerationConfig, ImagePart
from .pipeline import JobReport, TransformJob, estimate_processing
from .progress import ProgressStatus, ProgressTracker
from .rate_limiter import RateLimiter
from .retry_policy import RetryPolicy
from .scheduler import BatchScheduler, SchedulerCallbacks, SchedulerResult

__all__ = [
    "AssemblySummary",
    "Batch",
    "BatchOutcome",
    "BatchScheduler",
    "BatchState",
    "BatchStatus",
    "CredentialSet",
    "EngineConfig",
    "ErrorKind",
    "GeminiClient",
    "GeminiError",
    "GeminiSettings",
    "GenerationConfig",
    "ImagePart",
    "JobReport",
    "ProgressStatus",
    "ProgressTracker",
    "RateLimiter",
    "RetryPolicy",
    "SchedulerCallbacks",
    "SchedulerResult",
    "TransformJob",
    "assemble",
    "assign_images_to_batches",
    "chunk_text",
    "estimate_processing",
    "load_engine_config",
    "summarize",
]
