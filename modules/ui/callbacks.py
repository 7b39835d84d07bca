"""Callback implementations for the client-facing surface.

Every callback returns a JSON-ready dict with a ``success`` flag; errors are
reported as Chinese messages rather than raised.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from config.settings import AppConfig
from modules.pipelines.common import GenerationMode, ImageRef
from modules.pipelines.errors import GenerationError, QuotaExceededError, ValidationError
from modules.pipelines.img2img import ImageToImageRequest
from modules.pipelines.outpaint import (
    CompositeBuilder,
    OutpaintRequest,
    align_offset,
    canvas_size_for_ratio,
    fit_scale,
)
from modules.pipelines.submitter import GenerationRequest
from modules.pipelines.text2img import TextToImageRequest
from modules.quota.ledgers import Identity
from modules.services.generation_service import GenerationService
from modules.services.storage_service import StorageError, StorageService
from modules.utils.image_utils import decode_image, sniff_mime_type

logger = logging.getLogger(__name__)


def build_callbacks(
    config: AppConfig,
    service: Optional[GenerationService] = None,
    composite_builder: Optional[CompositeBuilder] = None,
    storage: Optional[StorageService] = None,
) -> dict[str, Any]:
    """Return a dictionary of client callback functions.

    ``storage`` serves proxied history images; it defaults to the store the
    history service writes to.
    """

    builder = composite_builder or CompositeBuilder()
    image_store = storage if storage is not None else (service.history.storage if service else None)

    def _ensure_service() -> GenerationService:
        if service is None:
            raise GenerationError("生成服务未配置")
        return service

    def _error(message: str, **flags: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "error": message}
        payload.update({key: value for key, value in flags.items() if value})
        return payload

    def _resolve_identity(account_id: Optional[str], guest_id: Optional[str]) -> Identity:
        if account_id:
            return Identity.account(account_id)
        if guest_id:
            return Identity.guest(guest_id)
        raise ValidationError("缺少访客标识，请刷新页面后重试")

    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def _parse_references(items: Any) -> Tuple[ImageRef, ...]:
        refs: List[ImageRef] = []
        for item in items or []:
            try:
                refs.append(ImageRef.from_data_url(str(item)))
            except ValueError as exc:
                raise ValidationError(f"参考图片格式无效：{exc}") from exc
        return tuple(refs)

    def _build_outpaint(body: Dict[str, Any], model_id: str) -> OutpaintRequest:
        options = body.get("outpaint") or {}
        source_data = options.get("image") or next(iter(body.get("referenceImages") or []), None)
        if not source_data:
            raise ValidationError("请先上传需要扩展的图片")
        try:
            source = decode_image(str(source_data))
        except (OSError, ValueError) as exc:
            raise ValidationError(f"无法读取原图：{exc}") from exc

        ratio_id = str(options.get("ratio") or body.get("aspectRatio") or "1:1")
        canvas = canvas_size_for_ratio(ratio_id)
        scale = _to_float(options.get("scale"), fit_scale(source.size, canvas))
        default_x, default_y = align_offset(source.size, canvas, scale=scale)
        offset = (
            _to_float(options.get("offsetX"), default_x),
            _to_float(options.get("offsetY"), default_y),
        )
        mask = None
        if options.get("mask"):
            try:
                mask = decode_image(str(options["mask"]))
            except (OSError, ValueError) as exc:
                raise ValidationError(f"无法读取蒙版：{exc}") from exc
        try:
            composite = builder.build(source, canvas, offset=offset, scale=scale, mask=mask)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return OutpaintRequest(
            composite=composite,
            model_id=model_id,
            guidance=str(body.get("prompt") or ""),
            aspect_ratio=ratio_id,
        )

    def _build_request(body: Dict[str, Any]) -> GenerationRequest:
        prompt = str(body.get("prompt") or "")
        model_id = str(body.get("model") or body.get("modelId") or "")
        mode = str(body.get("mode") or "")
        references = _parse_references(body.get("referenceImages"))
        if not mode:
            mode = GenerationMode.IMG2IMG.value if references else GenerationMode.TEXT2IMG.value

        if mode == GenerationMode.OUTPAINT.value:
            return _build_outpaint(body, model_id)
        if mode == GenerationMode.IMG2IMG.value:
            return ImageToImageRequest(
                prompt=prompt,
                model_id=model_id,
                references=references,
                aspect_ratio=body.get("aspectRatio"),
                resolution=body.get("resolution"),
                negative_prompt=body.get("negativePrompt"),
            )
        if mode == GenerationMode.TEXT2IMG.value:
            return TextToImageRequest(
                prompt=prompt,
                model_id=model_id,
                aspect_ratio=body.get("aspectRatio"),
                resolution=body.get("resolution"),
                negative_prompt=body.get("negativePrompt"),
            )
        raise ValidationError(f"不支持的生成模式：{mode}")

    def on_generate(body: Dict[str, Any], account_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            svc = _ensure_service()
            identity = _resolve_identity(account_id, body.get("guestId"))
            request = _build_request(body)
            started = svc.begin(request, identity)
        except QuotaExceededError as exc:
            return _error(
                str(exc),
                needLogin=exc.need_login,
                needCredits=exc.need_credits,
                guestLimitReached=exc.need_login and not account_id,
            )
        except GenerationError as exc:
            return _error(str(exc))

        payload: Dict[str, Any] = {
            "success": True,
            "taskId": started.task.task_id,
            "status": started.task.state.value,
            "isGuest": identity.is_guest,
        }
        if identity.is_guest:
            payload["guestRemaining"] = started.decision.remaining
        else:
            payload["credits"] = started.decision.remaining
        return payload

    def on_status(
        task_id: str,
        account_id: Optional[str] = None,
        guest_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not task_id:
            return _error("缺少任务 ID")
        try:
            svc = _ensure_service()
            identity = _resolve_identity(account_id, guest_id)
            report = svc.status(task_id, identity)
        except GenerationError as exc:
            return _error(str(exc))
        return report.to_payload()

    def on_list_history(account_id: Optional[str] = None, guest_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            svc = _ensure_service()
            identity = _resolve_identity(account_id, guest_id)
        except GenerationError as exc:
            return _error(str(exc))
        records = svc.list_history(identity)
        return {"success": True, "history": [record.to_dict() for record in records]}

    def on_delete_history(
        record_id: Optional[str] = None,
        account_id: Optional[str] = None,
        guest_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            svc = _ensure_service()
            identity = _resolve_identity(account_id, guest_id)
            removed = svc.delete_history(identity, record_id or None)
        except (GenerationError, StorageError, OSError, ValueError) as exc:
            return _error(f"删除失败：{exc}")
        if record_id and not removed:
            return _error("记录不存在")
        return {"success": True, "deleted": removed}

    def on_history_image(key: Optional[str]) -> Dict[str, Any]:
        """Bytes behind a proxied history image URL, with an HTTP-style status."""
        if image_store is None:
            return _error("存储未配置", status=500)
        if not key:
            return _error("缺少图片 key", status=400)
        try:
            data = image_store.get(key)
        except StorageError as exc:
            logger.error("Failed to read history image %s: %s", key, exc)
            return _error(str(exc) or "获取图片失败", status=500)
        if data is None:
            return _error("图片不存在", status=404)
        return {
            "success": True,
            "status": 200,
            "data": data,
            "contentType": sniff_mime_type(data),
            "cacheControl": "public, max-age=31536000, immutable",
        }

    def on_guest_quota(guest_id: str) -> Dict[str, Any]:
        if not guest_id:
            return _error("缺少访客标识")
        try:
            svc = _ensure_service()
        except GenerationError as exc:
            return _error(str(exc))
        svc.gate.guests.purge()
        return {"success": True, **svc.gate.guests.usage(guest_id)}

    def on_credits(account_id: str) -> Dict[str, Any]:
        try:
            svc = _ensure_service()
        except GenerationError as exc:
            return _error(str(exc))
        balance = svc.gate.credits.balance(account_id) if svc.gate.credits and account_id else None
        if balance is None:
            return _error("请先登录", needLogin=True)
        return {"success": True, "credits": balance}

    def on_models() -> Dict[str, Any]:
        return {
            "success": True,
            "models": config.available_models(),
            "defaultModel": config.default_model_id,
        }

    def on_register(email: str, username: str, password: str) -> Dict[str, Any]:
        try:
            svc = _ensure_service()
        except GenerationError as exc:
            return _error(str(exc))
        if svc.accounts is None:
            return _error("账户服务未配置")
        if len(password or "") < 6:
            return _error("密码至少需要 6 位")
        try:
            account = svc.accounts.create(email or "", username or "", password)
        except ValueError as exc:
            return _error(str(exc))
        return {"success": True, "user": account.to_public_dict()}

    return {
        "on_generate": on_generate,
        "on_status": on_status,
        "on_list_history": on_list_history,
        "on_delete_history": on_delete_history,
        "on_history_image": on_history_image,
        "on_guest_quota": on_guest_quota,
        "on_credits": on_credits,
        "on_models": on_models,
        "on_register": on_register,
    }
