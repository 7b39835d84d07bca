"""Validate generation requests and hand them to the owning provider."""

from __future__ import annotations

import logging
from typing import Union

from modules.pipelines.errors import ValidationError
from modules.pipelines.img2img import ImageToImageRequest
from modules.pipelines.outpaint import OutpaintRequest
from modules.pipelines.text2img import TextToImageRequest
from modules.providers.base import GenerationProvider
from modules.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

GenerationRequest = Union[TextToImageRequest, ImageToImageRequest, OutpaintRequest]


class TaskSubmitter:
    """Turn a request variant into a provider task id."""

    def __init__(self, registry: ProviderRegistry, max_reference_images: int = 14) -> None:
        self.registry = registry
        self.max_reference_images = max_reference_images

    def validate(self, request: GenerationRequest) -> GenerationProvider:
        """Reject bad requests before any ledger change or network call."""
        if not request.effective_prompt:
            raise ValidationError("请输入提示词")
        if not request.model_id:
            raise ValidationError("请选择模型")
        if isinstance(request, ImageToImageRequest) and len(request.references) > self.max_reference_images:
            raise ValidationError(f"参考图片最多 {self.max_reference_images} 张")
        return self.registry.for_model(request.model_id)

    def submit(self, request: GenerationRequest) -> str:
        provider = self.validate(request)
        payload = request.to_payload()
        task_id = provider.submit(payload)
        self.registry.remember(task_id, provider)
        logger.info(
            "Submitted %s task %s to %s (model=%s)",
            request.mode.value,
            task_id,
            provider.name,
            request.model_id,
        )
        return task_id
