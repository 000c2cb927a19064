from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from .models import Batch, BatchStatus

SECTION_SEPARATOR = "\n\n"


@dataclass
class FailedBatch:
    batch_id: str
    sequence_number: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"batch_id": self.batch_id, "sequence_number": self.sequence_number, "error": self.error}


@dataclass
class AssemblySummary:
    total: int
    success: int
    failure: int
    failed: List[FailedBatch] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.success / self.total * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failure": self.failure,
            "success_rate": round(self.success_rate, 2),
            "failed": [item.to_dict() for item in self.failed],
        }


def assemble(batches: Sequence[Batch], completed: Mapping[str, BatchStatus]) -> str:
    """Join successful outputs in sequence order, whatever order they finished in."""
    sections: List[str] = []
    for batch in sorted(batches, key=lambda item: item.sequence_number):
        status = completed.get(batch.id)
        if status is None or status.output is None:
            continue
        sections.append(status.output)
    return SECTION_SEPARATOR.join(sections)


def summarize(
    batches: Sequence[Batch],
    completed: Mapping[str, BatchStatus],
    failed: Mapping[str, BatchStatus],
) -> AssemblySummary:
    failures = [
        FailedBatch(
            batch_id=batch.id,
            sequence_number=batch.sequence_number,
            error=failed[batch.id].error or "Unknown error",
        )
        for batch in sorted(batches, key=lambda item: item.sequence_number)
        if batch.id in failed
    ]
    success = sum(1 for batch in batches if batch.id in completed)
    return AssemblySummary(total=len(batches), success=success, failure=len(failures), failed=failures)
