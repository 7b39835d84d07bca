"""Image-to-image request variant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from modules.pipelines.common import GenerationMode, ImageRef, ProviderPayload


@dataclass(frozen=True, slots=True)
class ImageToImageRequest:
    """Request data for generation conditioned on reference images."""

    prompt: str
    model_id: str
    references: Tuple[ImageRef, ...] = ()
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    negative_prompt: Optional[str] = None

    @property
    def mode(self) -> GenerationMode:
        return GenerationMode.IMG2IMG

    @property
    def image_refs(self) -> Tuple[ImageRef, ...]:
        return tuple(self.references)

    @property
    def effective_prompt(self) -> str:
        return self.prompt.strip()

    @property
    def history_prompt(self) -> str:
        return self.prompt.strip()

    def to_payload(self) -> ProviderPayload:
        """The prompt followed by every reference image in upload order."""
        return ProviderPayload(
            model_id=self.model_id,
            prompt=self.effective_prompt,
            images=self.image_refs,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            negative_prompt=(self.negative_prompt or "").strip() or None,
        )
