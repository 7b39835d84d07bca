"""Text-to-image request variant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from modules.pipelines.common import GenerationMode, ImageRef, ProviderPayload


@dataclass(frozen=True, slots=True)
class TextToImageRequest:
    """Request data for text-to-image generation."""

    prompt: str
    model_id: str
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    negative_prompt: Optional[str] = None

    @property
    def mode(self) -> GenerationMode:
        return GenerationMode.TEXT2IMG

    @property
    def image_refs(self) -> Tuple[ImageRef, ...]:
        return ()

    @property
    def effective_prompt(self) -> str:
        return self.prompt.strip()

    @property
    def history_prompt(self) -> str:
        return self.prompt.strip()

    def to_payload(self) -> ProviderPayload:
        """The prompt alone, plus optional size hints."""
        return ProviderPayload(
            model_id=self.model_id,
            prompt=self.effective_prompt,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            width=self.width,
            height=self.height,
            negative_prompt=(self.negative_prompt or "").strip() or None,
        )
