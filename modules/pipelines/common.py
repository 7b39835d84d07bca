"""Types shared by every generation request variant."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from modules.utils.image_utils import parse_data_url, to_data_url


class GenerationMode(str, Enum):
    """Supported generation modes, using the labels stored in history."""

    TEXT2IMG = "text2img"
    IMG2IMG = "img2img"
    OUTPAINT = "outpaint"


@dataclass(frozen=True, slots=True)
class ImageRef:
    """An image sent to the provider, kept as raw bytes plus its MIME type."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_data_url(cls, value: str) -> "ImageRef":
        data, mime_type = parse_data_url(value)
        return cls(data=data, mime_type=mime_type)

    def to_data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


@dataclass(frozen=True, slots=True)
class ProviderPayload:
    """Provider-neutral submission produced by a request variant."""

    model_id: str
    prompt: str
    images: Tuple[ImageRef, ...] = ()
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    negative_prompt: Optional[str] = None
