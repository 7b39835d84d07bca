"""Provider lookup by model id and by submitted task id."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional

from config.settings import AppConfig
from modules.pipelines.errors import TaskQueryError, ValidationError
from modules.providers.base import GenerationProvider
from modules.providers.gemini import GeminiProvider
from modules.providers.modelscope import ModelScopeProvider
from modules.services.storage_service import StorageService
from modules.utils.cache import TTLCache

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Cache provider clients and remember which one owns each task."""

    def __init__(
        self,
        providers: Mapping[str, GenerationProvider],
        catalog: Iterable[Dict[str, str]],
        task_ttl_seconds: float = 6 * 60 * 60,
    ) -> None:
        self._providers: Dict[str, GenerationProvider] = dict(providers)
        self._models: Dict[str, str] = {}
        for entry in catalog:
            value = str(entry.get("value") or "")
            if value:
                self._models[value] = str(entry.get("provider") or "modelscope")
        self._routes: TTLCache[str, str] = TTLCache(ttl_seconds=task_ttl_seconds)

    @classmethod
    def from_config(cls, config: AppConfig, storage: Optional[StorageService] = None) -> "ProviderRegistry":
        uploader = storage.upload_reference if storage is not None else None
        providers: Dict[str, GenerationProvider] = {
            "modelscope": ModelScopeProvider(
                config.modelscope_base_url,
                config.modelscope_key,
                timeout=config.request_timeout,
                image_uploader=uploader,
            ),
            "gemini": GeminiProvider(config.gemini_base_url, config.gemini_key),
        }
        return cls(providers, config.available_models())

    @property
    def providers(self) -> Dict[str, GenerationProvider]:
        return dict(self._providers)

    def for_model(self, model_id: str) -> GenerationProvider:
        name = self._models.get(model_id)
        if name is None:
            raise ValidationError(f"不支持的模型: {model_id}")
        provider = self._providers.get(name)
        if provider is None:
            raise ValidationError(f"模型 {model_id} 的服务商 {name} 未配置")
        return provider

    def remember(self, task_id: str, provider: GenerationProvider) -> None:
        self._routes.set(task_id, provider.name)

    def for_task(self, task_id: str) -> GenerationProvider:
        name = self._routes.get(task_id)
        if name is None and len(self._providers) == 1:
            return next(iter(self._providers.values()))
        provider = self._providers.get(name) if name else None
        if provider is None:
            raise TaskQueryError(f"未知的任务: {task_id}")
        return provider
