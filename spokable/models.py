from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class BatchState(str, Enum):
    """Lifecycle of a batch inside the scheduler."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    CONFIGURATION = "configuration"

    @property
    def is_transient(self) -> bool:
        return self in {ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT}


def new_batch_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ImagePart:
    """Image handed over by the extraction step (base64 payload, tagged with its page)."""

    page: int
    data: str
    mime_type: str = "image/png"


@dataclass(frozen=True)
class ContentPart:
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: str = "image/png"

    @classmethod
    def from_text(cls, text: str) -> "ContentPart":
        return cls(text=text)

    @classmethod
    def from_image(cls, image: ImagePart) -> "ContentPart":
        return cls(data=image.data, mime_type=image.mime_type or "image/png")

    @property
    def is_image(self) -> bool:
        return self.data is not None

    def to_payload(self) -> Dict[str, Any]:
        if self.is_image:
            return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}
        return {"text": self.text or ""}


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 4000

    def to_payload(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "maxOutputTokens": self.max_output_tokens,
        }


@dataclass(frozen=True)
class Batch:
    """One overlapping slice of the source text. Never mutated after chunking."""

    id: str
    sequence_number: int
    text: str
    start_offset: int
    end_offset: int
    approx_tokens: int
    images: Tuple[ImagePart, ...] = ()

    def with_images(self, images: Tuple[ImagePart, ...]) -> "Batch":
        return Batch(
            id=self.id,
            sequence_number=self.sequence_number,
            text=self.text,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
            approx_tokens=self.approx_tokens,
            images=tuple(images),
        )


@dataclass(frozen=True)
class CompletionResult:
    text: str
    finish_reason: Optional[str]
    model: str


@dataclass
class AttemptRecord:
    model: str
    attempt: int
    credential_index: Optional[int]
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    delay: float = 0.0


@dataclass
class BatchOutcome:
    """Result of running one batch through the retry/failover policy."""

    success: bool
    text: Optional[str] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    degraded: bool = False
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, len(self.attempts) - 1)

    @property
    def delays(self) -> List[float]:
        return [record.delay for record in self.attempts if record.delay > 0]


@dataclass
class BatchStatus:
    batch_id: str
    sequence_number: int
    state: BatchState = BatchState.PENDING
    worker_id: Optional[int] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retry_count: int = 0
    model: Optional[str] = None
    degraded: bool = False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "batch_id": self.batch_id,
            "sequence_number": self.sequence_number,
            "state": self.state.value,
            "worker_id": self.worker_id,
            "retry_count": self.retry_count,
            "model": self.model,
        }
        duration = self.duration
        if duration is not None:
            payload["duration_seconds"] = round(duration, 3)
        if self.degraded:
            payload["degraded"] = True
        if self.error:
            payload["error"] = self.error
            payload["error_kind"] = self.error_kind.value if self.error_kind else None
        return payload
