"""图生图请求与服务商请求体的单元测试。"""

from __future__ import annotations

import base64

from modules.pipelines.common import ImageRef
from modules.pipelines.img2img import ImageToImageRequest
from modules.providers.gemini import GeminiProvider
from modules.providers.modelscope import ModelScopeProvider


def _refs() -> tuple[ImageRef, ...]:
    return (
        ImageRef(data=b"first", mime_type="image/png"),
        ImageRef(data=b"second", mime_type="image/jpeg"),
    )


def test_payload_keeps_upload_order():
    request = ImageToImageRequest(prompt="make it night", model_id="demo-model", references=_refs())

    payload = request.to_payload()

    assert [ref.data for ref in payload.images] == [b"first", b"second"]
    assert payload.prompt == "make it night"


def test_modelscope_body_inlines_images_without_uploader():
    provider = ModelScopeProvider("https://api.example.com/", "key")
    request = ImageToImageRequest(prompt="p", model_id="org/model", references=_refs())

    body = provider.build_body(request.to_payload())

    assert body["model"] == "org/model"
    assert body["image_url"][0].startswith("data:image/png;base64,")
    assert body["image_url"][1].startswith("data:image/jpeg;base64,")


def test_modelscope_body_prefers_uploaded_urls():
    uploaded: list[bytes] = []

    def uploader(ref: ImageRef) -> str:
        uploaded.append(ref.data)
        return f"https://cdn.example.com/{len(uploaded)}.png"

    provider = ModelScopeProvider("https://api.example.com/", "key", image_uploader=uploader)
    request = ImageToImageRequest(prompt="p", model_id="org/model", references=_refs())

    body = provider.build_body(request.to_payload())

    assert body["image_url"] == ["https://cdn.example.com/1.png", "https://cdn.example.com/2.png"]
    assert uploaded == [b"first", b"second"]


def test_modelscope_body_falls_back_when_upload_fails():
    def uploader(ref: ImageRef) -> str:
        raise RuntimeError("bucket offline")

    provider = ModelScopeProvider("https://api.example.com/", "key", image_uploader=uploader)
    body = provider.build_body(
        ImageToImageRequest(prompt="p", model_id="m", references=_refs()[:1]).to_payload()
    )

    assert body["image_url"][0].startswith("data:image/png;base64,")


def test_gemini_body_places_prompt_before_images():
    provider = GeminiProvider("https://gemini.example.com/v1beta/", "key")
    request = ImageToImageRequest(
        prompt="merge them",
        model_id="gemini-3-pro-image-preview",
        references=_refs(),
        aspect_ratio="16:9",
        resolution="2K",
    )

    body = provider.build_body(request.to_payload())

    parts = body["contents"][0]["parts"]
    assert parts[0] == {"text": "merge them"}
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"first"
    assert parts[2]["inline_data"]["mime_type"] == "image/jpeg"
    assert body["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9", "imageSize": "2K"}


def test_gemini_body_skips_resolution_for_flash_model():
    provider = GeminiProvider("https://gemini.example.com/v1beta/", "key")
    request = ImageToImageRequest(
        prompt="p",
        model_id="gemini-2.5-flash-image",
        aspect_ratio="auto",
        resolution="2K",
    )

    body = provider.build_body(request.to_payload())

    assert "imageConfig" not in body["generationConfig"]
