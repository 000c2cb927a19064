"""Split source text into overlapping, ordered batches."""
from __future__ import annotations

import math
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .models import Batch, ImagePart, new_batch_id
from .token_utils import estimate_tokens, tokens_to_chars


def iter_windows(text_length: int, batch_size_tokens: int, overlap_tokens: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` character windows covering ``[0, text_length)``."""
    if batch_size_tokens <= 0:
        raise ValueError("Batch size must be a positive number of tokens.")
    if overlap_tokens < 0:
        raise ValueError("Overlap cannot be negative.")
    window = tokens_to_chars(batch_size_tokens)
    overlap = tokens_to_chars(overlap_tokens)
    start = 0
    while start < text_length:
        end = min(start + window, text_length)
        yield start, end
        if end >= text_length:
            return
        next_start = end - overlap
        # An overlap as wide as the window would never advance.
        if next_start <= start or next_start >= end:
            next_start = end
        start = next_start


def chunk_text(
    text: str,
    batch_size_tokens: int,
    overlap_tokens: int,
    *,
    id_factory: Optional[Callable[[], str]] = None,
) -> List[Batch]:
    make_id = id_factory or new_batch_id
    batches: List[Batch] = []
    for sequence, (start, end) in enumerate(iter_windows(len(text), batch_size_tokens, overlap_tokens), start=1):
        snippet = text[start:end]
        batches.append(
            Batch(
                id=make_id(),
                sequence_number=sequence,
                text=snippet,
                start_offset=start,
                end_offset=end,
                approx_tokens=estimate_tokens(snippet),
            )
        )
    return batches


def assign_images_to_batches(batches: Sequence[Batch], images: Sequence[ImagePart]) -> List[Batch]:
    """Spread extracted images evenly over the batches, one image per group of batches."""
    if not images:
        return list(batches)
    per_image = max(1, math.ceil(len(batches) / len(images)))
    assigned: List[Batch] = []
    for index, batch in enumerate(batches):
        image_index = index // per_image
        if image_index < len(images):
            assigned.append(batch.with_images((images[image_index],)))
        else:
            assigned.append(batch)
    return assigned
