"""Utility helpers for image preprocessing and postprocessing."""

from __future__ import annotations

import base64
import binascii
import re
from io import BytesIO
from typing import Any, Optional, Tuple

import requests
from PIL import Image

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)

_FORMAT_BY_MIME = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/webp": "WEBP",
}

_EXTENSION_BY_MIME = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}


def is_data_url(value: str) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def parse_data_url(value: str) -> Tuple[bytes, str]:
    """Split a base64 data URL into raw bytes and its MIME type."""
    match = _DATA_URL_RE.match(value or "")
    if match is None or not match.group("b64"):
        raise ValueError("不是有效的 base64 data URL")
    try:
        payload = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"base64 数据无法解码：{exc}") from exc
    return payload, match.group("mime") or "application/octet-stream"


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def extension_for(mime_type: str) -> str:
    return _EXTENSION_BY_MIME.get((mime_type or "").lower(), "png")


def sniff_mime_type(data: bytes, default: str = "image/png") -> str:
    """Guess an image MIME type from magic bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return default


def decode_image(data: bytes | str) -> Image.Image:
    """Open raw bytes or a data URL as a fully loaded PIL image."""
    if isinstance(data, str):
        data, _ = parse_data_url(data)
    image = Image.open(BytesIO(data))
    image.load()
    return image


def encode_image(image: Image.Image, mime_type: str = "image/png", quality: int = 95) -> bytes:
    """Serialize a PIL image; JPEG output drops alpha."""
    fmt = _FORMAT_BY_MIME.get(mime_type.lower(), "PNG")
    buffer = BytesIO()
    if fmt == "JPEG":
        image.convert("RGB").save(buffer, format=fmt, quality=quality)
    else:
        image.save(buffer, format=fmt)
    return buffer.getvalue()


def fetch_image_bytes(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 30.0,
) -> Tuple[bytes, str]:
    """Return ``(bytes, mime_type)`` for a remote URL or an inline data URL."""
    if is_data_url(url):
        return parse_data_url(url)
    http = session or requests
    response = http.get(url, timeout=timeout)
    response.raise_for_status()
    content = response.content
    header = (response.headers.get("Content-Type") or "").split(";")[0].strip()
    mime_type = header if header.startswith("image/") else sniff_mime_type(content)
    return content, mime_type


def prepare_image(image: Any, target_size: Tuple[int, int]) -> Image.Image:
    """Stretch the image to exactly ``target_size`` (no aspect preservation)."""
    if not isinstance(image, Image.Image):
        image = decode_image(image)
    width, height = int(target_size[0]), int(target_size[1])
    if image.size == (width, height):
        return image.copy()
    return image.resize((width, height), Image.Resampling.LANCZOS)
