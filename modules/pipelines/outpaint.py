"""Outpainting: composite/mask construction and post-generation reconstruction.

The provider receives two images: a binary mask (black keeps, white
generates) and a composite canvas holding the source over a neutral gray
fill. Providers treat the mask as a hint only, so once a result comes back
the source pixels are pasted over it again to make the preserved region
exact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from modules.pipelines.common import GenerationMode, ImageRef, ProviderPayload
from modules.pipelines.errors import ReconstructionError
from modules.utils.image_utils import decode_image, encode_image, prepare_image

logger = logging.getLogger(__name__)

GRAY_FILL = (128, 128, 128)
MASK_PRESERVE = (0, 0, 0)
MASK_GENERATE = (255, 255, 255)

OUTPAINT_ASPECT_RATIOS: dict[str, float] = {
    "1:1": 1.0,
    "16:9": 16 / 9,
    "9:16": 9 / 16,
    "4:3": 4 / 3,
    "3:4": 3 / 4,
}

OUTPAINT_INSTRUCTION = (
    "This is an outpainting task with a mask. I'm providing two images:\n"
    "1. The first image is the mask where BLACK areas represent the original image that MUST be "
    "preserved EXACTLY as-is, and WHITE areas represent the regions that need to be generated "
    "with new content.\n"
    "2. The second image is the composite with the original photo and gray areas that need to "
    "be filled.\n\n"
    "CRITICAL: Do NOT modify, regenerate, or alter ANY pixels in the black masked areas. Only "
    "generate new content in the white masked areas. The new content should seamlessly blend "
    "with the original image, matching its style, lighting, perspective, and color palette."
)

DEFAULT_OUTPAINT_HISTORY_PROMPT = "扩展图片"


def canvas_size_for_ratio(ratio_id: str, base: int = 1024) -> Tuple[int, int]:
    """Return the canvas size used for an outpaint aspect ratio; the long side is ``base``."""
    ratio = OUTPAINT_ASPECT_RATIOS.get(ratio_id, 1.0)
    if ratio >= 1:
        return base, int(round(base / ratio))
    return int(round(base * ratio)), base


def fit_scale(source_size: Tuple[int, int], canvas_size: Tuple[int, int]) -> float:
    """Largest scale that fits the source inside the canvas without upscaling."""
    width, height = source_size
    canvas_width, canvas_height = canvas_size
    if width <= 0 or height <= 0:
        return 1.0
    return min(canvas_width / width, canvas_height / height, 1.0)


def _placed_size(source_size: Tuple[int, int], scale: float) -> Tuple[int, int]:
    if scale == 1:
        return source_size
    return max(1, int(round(source_size[0] * scale))), max(1, int(round(source_size[1] * scale)))


def align_offset(
    source_size: Tuple[int, int],
    canvas_size: Tuple[int, int],
    horizontal: str = "center",
    vertical: str = "middle",
    scale: float = 1.0,
) -> Tuple[float, float]:
    """Fractional offset that aligns the placed source to a canvas edge or center."""
    placed_w, placed_h = _placed_size(source_size, scale)
    canvas_w, canvas_h = canvas_size
    free_x = (canvas_w - placed_w) / canvas_w
    free_y = (canvas_h - placed_h) / canvas_h
    x = {"left": 0.0, "center": free_x / 2, "right": free_x}.get(horizontal, free_x / 2)
    y = {"top": 0.0, "middle": free_y / 2, "bottom": free_y}.get(vertical, free_y / 2)
    return max(0.0, x), max(0.0, y)


def clamp_offset(
    offset: Tuple[float, float],
    placed_size: Tuple[int, int],
    canvas_size: Tuple[int, int],
) -> Tuple[float, float]:
    """Keep the placed rectangle inside the canvas, like a drag constraint."""
    clamped = []
    for value, placed, canvas in zip(offset, placed_size, canvas_size):
        limit = max(0.0, (canvas - placed) / canvas)
        clamped.append(min(max(float(value), 0.0), limit))
    return clamped[0], clamped[1]


def _pixel_position(fraction: float, placed: int, canvas: int) -> int:
    return min(int(round(fraction * canvas)), max(0, canvas - placed))


def binarize_mask(mask: Any, canvas_size: Tuple[int, int]) -> Image.Image:
    """Normalize a painted mask to pure black/white RGB at the canvas size."""
    image = mask if isinstance(mask, Image.Image) else decode_image(mask)
    gray = image.convert("L")
    if gray.size != tuple(canvas_size):
        gray = gray.resize(canvas_size, Image.Resampling.NEAREST)
    return gray.point(lambda value: 255 if value >= 128 else 0).convert("RGB")


@dataclass(frozen=True, slots=True, eq=False)
class OutpaintComposite:
    """Composite/mask pair plus the placement needed to rebuild the result."""

    composite_image: Image.Image
    mask_image: Image.Image
    source_image: Image.Image
    offset_x: float
    offset_y: float
    source_width: int
    source_height: int
    canvas_width: int
    canvas_height: int
    target_width: int
    target_height: int
    scale: float = 1.0
    custom_mask: bool = False

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self.canvas_width, self.canvas_height

    @property
    def target_size(self) -> Tuple[int, int]:
        return self.target_width, self.target_height

    def placement(self, size: Optional[Tuple[int, int]] = None) -> Tuple[int, int, int, int]:
        """Return ``(left, top, width, height)`` of the source on a canvas of ``size``."""
        width, height = size or self.canvas_size
        left = _pixel_position(self.offset_x, self.source_width, width)
        top = _pixel_position(self.offset_y, self.source_height, height)
        return left, top, self.source_width, self.source_height

    def to_image_refs(self) -> Tuple[ImageRef, ImageRef]:
        """Encoded ``(mask, composite)``, the order the provider expects."""
        mask = ImageRef(data=encode_image(self.mask_image, "image/png"), mime_type="image/png")
        composite = ImageRef(
            data=encode_image(self.composite_image, "image/jpeg", quality=95),
            mime_type="image/jpeg",
        )
        return mask, composite


class CompositeBuilder:
    """Build the canvas and mask sent to the provider for outpainting."""

    def __init__(self, fill: Tuple[int, int, int] = GRAY_FILL) -> None:
        self.fill = fill

    def build(
        self,
        source_image: Any,
        canvas_size: Tuple[int, int],
        offset: Tuple[float, float] = (0.0, 0.0),
        scale: float = 1.0,
        target_size: Optional[Tuple[int, int]] = None,
        mask: Any = None,
    ) -> OutpaintComposite:
        """Recompute composite and mask from scratch for the given placement.

        ``mask`` is an optional hand-painted mask (black keeps, white
        regenerates) that replaces the rectangle mask. It may mark parts of
        the source for regeneration as well as parts of the fill.
        """
        source = source_image if isinstance(source_image, Image.Image) else decode_image(source_image)
        canvas_width, canvas_height = int(canvas_size[0]), int(canvas_size[1])
        if canvas_width <= 0 or canvas_height <= 0:
            raise ValueError("画布尺寸必须为正数")
        if scale <= 0:
            raise ValueError("缩放比例必须为正数")

        placed_w, placed_h = _placed_size(source.size, scale)
        offset_x, offset_y = clamp_offset(offset, (placed_w, placed_h), (canvas_width, canvas_height))
        left = _pixel_position(offset_x, placed_w, canvas_width)
        top = _pixel_position(offset_y, placed_h, canvas_height)

        placed = source if (placed_w, placed_h) == source.size else source.resize(
            (placed_w, placed_h), Image.Resampling.LANCZOS
        )

        composite = Image.new("RGB", (canvas_width, canvas_height), self.fill)
        if placed.mode in ("RGBA", "LA") or "transparency" in placed.info:
            rgba = placed.convert("RGBA")
            composite.paste(rgba, (left, top), rgba)
        else:
            composite.paste(placed.convert("RGB"), (left, top))

        if mask is not None:
            mask_image = binarize_mask(mask, (canvas_width, canvas_height))
        else:
            mask_image = Image.new("RGB", (canvas_width, canvas_height), MASK_GENERATE)
            mask_image.paste(MASK_PRESERVE, (left, top, left + placed_w, top + placed_h))

        target_width, target_height = target_size or (canvas_width, canvas_height)
        return OutpaintComposite(
            composite_image=composite,
            mask_image=mask_image,
            source_image=source,
            offset_x=offset_x,
            offset_y=offset_y,
            source_width=placed_w,
            source_height=placed_h,
            canvas_width=canvas_width,
            canvas_height=canvas_height,
            target_width=int(target_width),
            target_height=int(target_height),
            scale=scale,
            custom_mask=mask is not None,
        )


class ReconstructionStage:
    """Paste the original pixels back over the provider's output."""

    def reconstruct(self, provider_output: Any, composite: OutpaintComposite) -> Image.Image:
        try:
            output = provider_output if isinstance(provider_output, Image.Image) else decode_image(provider_output)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise ReconstructionError(f"加载 AI 结果失败：{exc}") from exc

        source = composite.source_image
        try:
            source.load()
        except (OSError, ValueError) as exc:
            raise ReconstructionError(f"加载原图失败：{exc}") from exc

        mode = "RGBA" if source.mode in ("RGBA", "LA") else "RGB"
        result = prepare_image(output, composite.target_size).convert(mode)

        left, top, width, height = composite.placement(composite.target_size)
        patch = source if source.size == (width, height) else source.resize(
            (width, height), Image.Resampling.LANCZOS
        )
        if composite.custom_mask:
            # only pixels still painted black are restored
            keep = composite.mask_image.convert("L")
            if keep.size != composite.target_size:
                keep = keep.resize(composite.target_size, Image.Resampling.NEAREST)
            keep = keep.crop((left, top, left + width, top + height)).point(lambda value: 255 if value < 128 else 0)
            result.paste(patch.convert(mode), (left, top), keep)
        else:
            result.paste(patch.convert(mode), (left, top))
        logger.debug(
            "Reconstructed outpaint result %sx%s with source at (%s, %s)",
            composite.target_width,
            composite.target_height,
            left,
            top,
        )
        return result


@dataclass(frozen=True, slots=True, eq=False)
class OutpaintRequest:
    """Request data for outpainting a prepared composite."""

    composite: OutpaintComposite
    model_id: str
    guidance: str = ""
    aspect_ratio: Optional[str] = None

    @property
    def mode(self) -> GenerationMode:
        return GenerationMode.OUTPAINT

    @property
    def prompt(self) -> str:
        return self.effective_prompt

    @property
    def image_refs(self) -> Tuple[ImageRef, ...]:
        return self.composite.to_image_refs()

    @property
    def effective_prompt(self) -> str:
        guidance = self.guidance.strip()
        if guidance:
            return f"{OUTPAINT_INSTRUCTION}\n\nAdditional guidance for the extended areas: {guidance}"
        return OUTPAINT_INSTRUCTION

    @property
    def history_prompt(self) -> str:
        return self.guidance.strip() or DEFAULT_OUTPAINT_HISTORY_PROMPT

    def to_payload(self) -> ProviderPayload:
        """Mask first, composite second, with the black/white instruction as prompt."""
        return ProviderPayload(
            model_id=self.model_id,
            prompt=self.effective_prompt,
            images=self.image_refs,
            aspect_ratio=self.aspect_ratio,
            width=self.composite.canvas_width,
            height=self.composite.canvas_height,
        )
