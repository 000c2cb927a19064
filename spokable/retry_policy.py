"""Backoff, credential failover and model-tier cascade around single completion calls."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from .credentials import CredentialSet
from .gemini_client import GeminiClient, GeminiError
from .models import AttemptRecord, Batch, BatchOutcome, ContentPart, ErrorKind, GenerationConfig

logger = logging.getLogger(__name__)

PartsBuilder = Callable[[Batch, bool], List[ContentPart]]

_CAPABILITY_HINTS = ("image", "multimodal", "inline_data", "mime type")


def default_prompt_builder(batch: Batch, include_images: bool) -> List[ContentPart]:
    parts = [ContentPart.from_text(batch.text)]
    if include_images:
        parts.extend(ContentPart.from_image(image) for image in batch.images)
    return parts


def backoff_delay(attempt: int, base_delay: float, kind: Optional[ErrorKind], rate_limit_penalty: float) -> float:
    """Delay after failed attempt ``attempt`` (1-based): ``base * 2**(attempt-1)`` plus the 429 penalty."""
    delay = base_delay * (2 ** (max(1, attempt) - 1))
    if kind is ErrorKind.RATE_LIMITED:
        delay += rate_limit_penalty
    return delay


def is_capability_mismatch(exc: GeminiError) -> bool:
    if exc.kind is not ErrorKind.CLIENT_ERROR:
        return False
    message = str(exc).lower()
    return any(hint in message for hint in _CAPABILITY_HINTS)


class RetryPolicy:
    def __init__(
        self,
        client: GeminiClient,
        *,
        max_retries: int = 3,
        base_delay: float = 2.0,
        rate_limit_penalty: float = 1.0,
        timeout: Optional[float] = None,
        generation_config: Optional[GenerationConfig] = None,
        prompt_builder: Optional[PartsBuilder] = None,
        include_images: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1.")
        self.client = client
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.rate_limit_penalty = rate_limit_penalty
        self.timeout = timeout
        self.generation_config = generation_config or GenerationConfig()
        self.prompt_builder = prompt_builder or default_prompt_builder
        self.include_images = include_images
        self._sleep = sleep

    def run(
        self,
        batch: Batch,
        models: Sequence[str],
        credentials: CredentialSet,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        *,
        before_attempt: Optional[Callable[[], object]] = None,
    ) -> BatchOutcome:
        retries = self.max_retries if max_retries is None else max(1, max_retries)
        delay_base = self.base_delay if base_delay is None else base_delay
        tiers = [model for model in models if model]
        attempts: List[AttemptRecord] = []
        if not tiers:
            return _configuration_failure("No model available", attempts)
        if not len(credentials):
            return _configuration_failure("No API key available", attempts)

        last_error: Optional[GeminiError] = None
        degraded = False
        for tier_index, model in enumerate(tiers):
            include_images = self.include_images and bool(batch.images) and not degraded
            attempt = 1
            while attempt <= retries:
                if before_attempt is not None:
                    before_attempt()
                key_index, key = credentials.acquire()
                record = AttemptRecord(model=model, attempt=attempt, credential_index=key_index)
                attempts.append(record)
                parts = self.prompt_builder(batch, include_images)
                try:
                    result = self.client.execute(model, parts, self.generation_config, key, self.timeout)
                except GeminiError as exc:
                    last_error = exc
                    record.error_kind = exc.kind
                    record.error = str(exc)
                    if exc.kind is ErrorKind.CONFIGURATION:
                        return _configuration_failure(str(exc), attempts)
                    if exc.kind is ErrorKind.CLIENT_ERROR:
                        if include_images and is_capability_mismatch(exc):
                            logger.warning(
                                "Model %s rejected images for batch %s; retrying text-only.",
                                model,
                                batch.sequence_number,
                            )
                            include_images = False
                            degraded = True
                            continue
                        logger.warning("Batch %s: client error on %s: %s", batch.sequence_number, model, exc)
                        break
                    logger.warning(
                        "Batch %s: %s on %s (attempt %s/%s): %s",
                        batch.sequence_number,
                        exc.kind.value,
                        model,
                        attempt,
                        retries,
                        exc,
                    )
                    if exc.kind in (ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR) and credentials.report_failure(
                        key_index
                    ):
                        attempt += 1
                        continue
                    if attempt >= retries:
                        break
                    record.delay = backoff_delay(attempt, delay_base, exc.kind, self.rate_limit_penalty)
                    self._sleep(record.delay)
                    attempt += 1
                    continue
                credentials.report_success(key_index)
                return BatchOutcome(
                    success=True,
                    text=result.text,
                    model=result.model,
                    finish_reason=result.finish_reason,
                    degraded=degraded,
                    attempts=attempts,
                )
            if tier_index < len(tiers) - 1:
                logger.warning("Model %s failed for batch %s, trying next model...", model, batch.sequence_number)

        return BatchOutcome(
            success=False,
            error=str(last_error) if last_error else "Request failed",
            error_kind=last_error.kind if last_error else None,
            degraded=degraded,
            attempts=attempts,
        )


def _configuration_failure(message: str, attempts: List[AttemptRecord]) -> BatchOutcome:
    return BatchOutcome(success=False, error=message, error_kind=ErrorKind.CONFIGURATION, attempts=attempts)
