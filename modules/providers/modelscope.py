"""ModelScope asynchronous image generation client.

Submissions go to ``v1/images/generations`` in async mode and return a task
id; ``v1/tasks/<id>`` reports ``task_status`` as PENDING, PROCESSING,
SUCCEED or FAILED together with ``output_images`` / ``error_message``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import requests

from modules.pipelines.common import ImageRef, ProviderPayload
from modules.pipelines.errors import SubmissionError, TaskQueryError
from modules.pipelines.tasks import PollResult

logger = logging.getLogger(__name__)

ImageUploader = Callable[[ImageRef], Optional[str]]


class ModelScopeProvider:
    """Thin requests-based client for the ModelScope inference API."""

    name = "modelscope"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        image_uploader: Optional[ImageUploader] = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()
        self._image_uploader = image_uploader

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    def _image_url(self, ref: ImageRef) -> str:
        # the API only takes URLs; prefer a hosted copy, else inline the bytes
        if self._image_uploader is not None:
            try:
                url = self._image_uploader(ref)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Reference upload failed, sending inline data instead: %s", exc)
                url = None
            if url:
                return url
        return ref.to_data_url()

    def build_body(self, payload: ProviderPayload) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": payload.model_id, "prompt": payload.prompt}
        if payload.images:
            body["image_url"] = [self._image_url(ref) for ref in payload.images]
        if payload.width:
            body["width"] = payload.width
        if payload.height:
            body["height"] = payload.height
        negative = payload.negative_prompt
        if negative:
            body["negative_prompt"] = negative
        return body

    def submit(self, payload: ProviderPayload) -> str:
        if not self.api_key:
            raise SubmissionError("未配置 ModelScope API Key")

        body = self.build_body(payload)
        logger.info(
            "Submitting ModelScope task: model=%s images=%d",
            payload.model_id,
            len(payload.images),
        )
        try:
            response = self._session.post(
                f"{self.base_url}v1/images/generations",
                json=body,
                headers=self._headers(**{"X-ModelScope-Async-Mode": "true"}),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SubmissionError(f"提交任务失败: {exc}") from exc

        if not response.ok:
            logger.error("ModelScope rejected submission: %s %s", response.status_code, response.text)
            raise SubmissionError(
                f"提交任务失败: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        task_id = (response.json() or {}).get("task_id")
        if not task_id:
            raise SubmissionError("未获取到任务 ID")
        logger.info("ModelScope task submitted: %s", task_id)
        return str(task_id)

    def query(self, task_id: str) -> PollResult:
        try:
            response = self._session.get(
                f"{self.base_url}v1/tasks/{task_id}",
                headers=self._headers(**{"X-ModelScope-Task-Type": "image_generation"}),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TaskQueryError(f"查询任务状态失败: {exc}") from exc

        if not response.ok:
            raise TaskQueryError(f"查询任务状态失败: {response.status_code} - {response.text}")

        data = response.json() or {}
        status = str(data.get("task_status") or "").upper()
        logger.debug("ModelScope task %s status: %s", task_id, status)

        if status == "SUCCEED":
            images = [url for url in data.get("output_images") or [] if url]
            if not images:
                return PollResult.failed("生成成功但未返回图片")
            return PollResult.succeeded(images)
        if status == "FAILED":
            return PollResult.failed(data.get("error_message") or "图像生成失败")
        if status == "PENDING":
            return PollResult.pending()
        return PollResult.processing()

    def check_status(self) -> Dict[str, Any]:
        """Probe the models endpoint to report whether the key works."""
        if not self.api_key:
            return {"configured": False, "valid": False, "message": "未配置 ModelScope API Key"}
        try:
            response = self._session.get(
                f"{self.base_url}v1/models",
                headers=self._headers(),
                timeout=5,
            )
        except requests.Timeout:
            return {"configured": True, "valid": False, "message": "连接超时"}
        except requests.RequestException as exc:
            return {"configured": True, "valid": False, "message": f"连接失败: {exc}"}
        if response.ok:
            return {"configured": True, "valid": True, "message": "ModelScope 连接正常"}
        return {"configured": True, "valid": False, "message": f"连接失败: {response.status_code}"}
