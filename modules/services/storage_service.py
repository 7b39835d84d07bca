"""Blob storage for generated images and JSON documents."""

from __future__ import annotations

import logging
import uuid
from io import BytesIO
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

from minio import Minio
from minio.error import MinioException, S3Error
from urllib3.exceptions import HTTPError

from config.settings import AppConfig
from modules.pipelines.common import ImageRef
from modules.utils.image_utils import extension_for

logger = logging.getLogger(__name__)

PROXY_PATH = "/api/history/image"

# Unreachable endpoints surface as urllib3 errors rather than S3Error
_BACKEND_ERRORS = (MinioException, HTTPError, OSError)


class StorageError(RuntimeError):
    """Raised when a blob operation fails."""


def proxied_url(key: str) -> str:
    return f"{PROXY_PATH}?key={quote(key, safe='')}"


class StorageService:
    """Key/value blob store interface shared by the S3 and local backends."""

    public_url: Optional[str] = None

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        """Public URL when a public base is configured, otherwise the proxied path."""
        if self.public_url:
            return f"{self.public_url}/{key}"
        return proxied_url(key)

    def save_image(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        """Persist an image and return the URL clients should load it from."""
        self.put(key, data, content_type)
        return self.url_for(key)

    def upload_reference(self, ref: ImageRef) -> Optional[str]:
        """Host a provider input image; only useful when it is publicly reachable."""
        if not self.public_url:
            return None
        key = f"input/{uuid.uuid4().hex}.{extension_for(ref.mime_type)}"
        return self.save_image(key, ref.data, ref.mime_type)


class S3StorageService(StorageService):
    """S3-compatible object storage through the MinIO client."""

    def __init__(self, client: Minio, bucket: str, public_url: Optional[str] = None) -> None:
        self.client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/") if public_url else None
        self._bucket_checked = False

    @classmethod
    def from_config(cls, config: AppConfig) -> "S3StorageService":
        endpoint = config.s3_endpoint or ""
        secure = config.s3_secure
        parsed = urlparse(endpoint)
        if parsed.scheme in ("http", "https"):
            # Minio wants host[:port]; the scheme only decides TLS
            secure = parsed.scheme == "https"
            endpoint = parsed.netloc
        client = Minio(
            endpoint,
            access_key=config.s3_access_key,
            secret_key=config.s3_secret_key,
            secure=secure,
        )
        return cls(client, config.s3_bucket or "", public_url=config.s3_public_url)

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info("Created bucket: %s", self.bucket)
        except _BACKEND_ERRORS as exc:
            raise StorageError(f"存储桶不可用：{exc}") from exc
        self._bucket_checked = True

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self._ensure_bucket()
        try:
            self.client.put_object(
                self.bucket,
                key,
                BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except _BACKEND_ERRORS as exc:
            raise StorageError(f"上传失败：{exc}") from exc
        logger.debug("Uploaded object %s (%d bytes)", key, len(data))

    def get(self, key: str) -> Optional[bytes]:
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchBucket"):
                return None
            raise StorageError(f"读取失败：{exc}") from exc
        except _BACKEND_ERRORS as exc:
            raise StorageError(f"读取失败：{exc}") from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def delete(self, key: str) -> bool:
        try:
            self.client.remove_object(self.bucket, key)
        except _BACKEND_ERRORS as exc:
            logger.warning("Failed to delete object %s: %s", key, exc)
            return False
        return True


class LocalStorageService(StorageService):
    """Filesystem-backed store used for local runs and tests."""

    def __init__(self, root: Path, public_url: Optional[str] = None) -> None:
        self.root = Path(root)
        self.public_url = public_url.rstrip("/") if public_url else None

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"非法的存储路径：{key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"写入失败：{exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"读取失败：{exc}") from exc

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


def build_storage(config: AppConfig) -> Optional[StorageService]:
    """Return the configured object store, or ``None`` so callers fall back to inline data."""
    if not config.storage_configured():
        logger.info("Object storage not configured; images will be returned inline")
        return None
    return S3StorageService.from_config(config)
