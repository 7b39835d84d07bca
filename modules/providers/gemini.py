"""Gemini image generation client.

Gemini answers ``generateContent`` synchronously with inline images. To keep
one orchestration path, each answer is parked under a generated task id and
the first status query resolves it immediately.
"""

from __future__ import annotations

import base64
import logging
import uuid
from typing import Any, Dict, List, Optional

import requests

from modules.pipelines.common import ProviderPayload
from modules.pipelines.errors import SubmissionError, TaskQueryError
from modules.pipelines.tasks import PollResult
from modules.utils.cache import TTLCache
from modules.utils.image_utils import to_data_url

logger = logging.getLogger(__name__)

# only the Pro model honours imageSize
RESOLUTION_MODELS = frozenset({"gemini-3-pro-image-preview"})


class GeminiProvider:
    """requests-based client for the Gemini ``generateContent`` endpoint."""

    name = "gemini"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
        result_ttl_seconds: float = 3600.0,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()
        self._results: TTLCache[str, PollResult] = TTLCache(ttl_seconds=result_ttl_seconds)

    def build_body(self, payload: ProviderPayload) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": payload.prompt}]
        for ref in payload.images:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": ref.mime_type,
                        "data": base64.b64encode(ref.data).decode("ascii"),
                    }
                }
            )

        generation_config: Dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
        image_config: Dict[str, Any] = {}
        if payload.aspect_ratio and payload.aspect_ratio != "auto":
            image_config["aspectRatio"] = payload.aspect_ratio
        if payload.resolution and payload.model_id in RESOLUTION_MODELS:
            image_config["imageSize"] = payload.resolution
        if image_config:
            generation_config["imageConfig"] = image_config

        return {"contents": [{"parts": parts}], "generationConfig": generation_config}

    @staticmethod
    def _extract_images(data: Dict[str, Any]) -> tuple[List[str], str]:
        images: List[str] = []
        text = ""
        candidates = data.get("candidates") or []
        if not candidates:
            return images, text
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            if part.get("text"):
                text += part["text"]
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                images.append(to_data_url(base64.b64decode(inline["data"]), mime_type))
        return images, text

    def submit(self, payload: ProviderPayload) -> str:
        if not self.api_key:
            raise SubmissionError("未配置 Gemini API Key")

        logger.info("Calling Gemini: model=%s images=%d", payload.model_id, len(payload.images))
        try:
            response = self._session.post(
                f"{self.base_url}models/{payload.model_id}:generateContent",
                json=self.build_body(payload),
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SubmissionError(f"生成失败: {exc}") from exc

        if not response.ok:
            logger.error("Gemini rejected request: %s %s", response.status_code, response.text)
            raise SubmissionError(
                f"生成失败: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        images, text = self._extract_images(response.json() or {})
        task_id = f"gemini_{uuid.uuid4().hex}"
        if images:
            self._results.set(task_id, PollResult.succeeded(images))
        else:
            self._results.set(task_id, PollResult.failed(text.strip() or "未能生成图片"))
        return task_id

    def query(self, task_id: str) -> PollResult:
        self._results.purge()
        result = self._results.get(task_id)
        if result is None:
            raise TaskQueryError(f"未知或已过期的任务: {task_id}")
        return result

    def check_status(self) -> Dict[str, Any]:
        if not self.api_key:
            return {"configured": False, "valid": False, "message": "未配置 Gemini API Key"}
        try:
            response = self._session.get(
                f"{self.base_url}models",
                headers={"x-goog-api-key": self.api_key},
                timeout=5,
            )
        except requests.RequestException as exc:
            return {"configured": True, "valid": False, "message": f"连接失败: {exc}"}
        if response.ok:
            return {"configured": True, "valid": True, "message": "API Key 验证成功"}
        return {"configured": True, "valid": False, "message": f"连接失败: {response.status_code}"}
