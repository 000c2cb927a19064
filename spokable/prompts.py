from __future__ import annotations

from typing import List

from .config import DEFAULT_IMAGE_PROMPT, DEFAULT_TRANSFORMATION_PROMPT
from .models import Batch, ContentPart

PROMPT_SEPARATOR = "\n\n---\n\n"


def build_prompt(text: str, transformation_prompt: str = DEFAULT_TRANSFORMATION_PROMPT) -> str:
    base = (transformation_prompt or DEFAULT_TRANSFORMATION_PROMPT).strip()
    return f"{base}{PROMPT_SEPARATOR}{text}"


class PromptBuilder:
    """Turns a batch into request parts.

    Text-only batches become one prompt part. Batches carrying figures add a
    description prompt followed by the inline image for each figure.
    """

    def __init__(
        self,
        transformation_prompt: str = DEFAULT_TRANSFORMATION_PROMPT,
        image_prompt: str = DEFAULT_IMAGE_PROMPT,
    ):
        self.transformation_prompt = transformation_prompt
        self.image_prompt = image_prompt or DEFAULT_IMAGE_PROMPT

    def __call__(self, batch: Batch, include_images: bool) -> List[ContentPart]:
        parts = [ContentPart.from_text(build_prompt(batch.text, self.transformation_prompt))]
        if not include_images:
            return parts
        for image in batch.images:
            parts.append(ContentPart.from_text(f"\n\n{self.image_prompt}"))
            parts.append(ContentPart.from_image(image))
        return parts
