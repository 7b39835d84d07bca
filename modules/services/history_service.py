"""Generation history tracking."""

from __future__ import annotations

import json
import logging
import random
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from modules.services.storage_service import StorageError, StorageService

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_record_id(now: Optional[float] = None) -> str:
    """``<epoch-ms>_<7 random base36 chars>``."""
    millis = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{millis}_{suffix}"


@dataclass(slots=True)
class PersistedImage:
    """One image of a history record, as clients should load it."""

    url: str
    key: Optional[str] = None
    title: str = ""
    source_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "title": self.title}
        if self.key:
            data["key"] = self.key
        if self.source_url:
            data["sourceUrl"] = self.source_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedImage":
        return cls(
            url=str(data.get("url") or ""),
            key=data.get("key"),
            title=str(data.get("title") or ""),
            source_url=data.get("sourceUrl"),
        )


@dataclass(slots=True)
class HistoryRecord:
    """Metadata describing a finished generation."""

    id: str
    prompt: str
    mode: str  # text2img, img2img or outpaint
    model_id: str
    images: List[PersistedImage] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    task_id: Optional[str] = None
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "mode": self.mode,
            "modelId": self.model_id,
            "images": [image.to_dict() for image in self.images],
            "createdAt": self.created_at,
            "taskId": self.task_id,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            id=str(data["id"]),
            prompt=str(data.get("prompt") or ""),
            mode=str(data.get("mode") or "text2img"),
            model_id=str(data.get("modelId") or ""),
            images=[PersistedImage.from_dict(item) for item in data.get("images") or [] if isinstance(item, dict)],
            created_at=str(data.get("createdAt") or ""),
            task_id=data.get("taskId"),
            provider=data.get("provider"),
        )


@dataclass(frozen=True, slots=True)
class PersistResult:
    """Outcome of a best-effort history write; callers log it and move on."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "PersistResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "PersistResult":
        return cls(ok=False, error=error)


class GenerationHistoryService:
    """Per-identity history kept newest first and capped at ``limit`` entries.

    Each identity owns one JSON document, stored in the object store when one
    is configured and under ``history_dir`` otherwise.
    """

    def __init__(
        self,
        history_dir: Path,
        storage: Optional[StorageService] = None,
        limit: int = 100,
    ) -> None:
        self.history_dir = Path(history_dir)
        self.storage = storage
        self.limit = limit
        self._lock = threading.Lock()

    def _document_key(self, identity_key: str) -> str:
        return f"history/{identity_key}.json"

    def _read(self, identity_key: str) -> List[HistoryRecord]:
        if self.storage is not None:
            raw = self.storage.get(self._document_key(identity_key))
        else:
            path = self.history_dir / f"{identity_key}.json"
            raw = path.read_bytes() if path.exists() else None
        if not raw:
            return []
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, list):
            raise ValueError("history document is not a list")
        records = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("id"):
                logger.warning("Skipping malformed history entry for %s", identity_key)
                continue
            records.append(HistoryRecord.from_dict(item))
        return records

    def _write(self, identity_key: str, records: List[HistoryRecord]) -> None:
        data = json.dumps([record.to_dict() for record in records], ensure_ascii=False, indent=2)
        if self.storage is not None:
            self.storage.put(self._document_key(identity_key), data.encode("utf-8"), "application/json")
            return
        self.history_dir.mkdir(parents=True, exist_ok=True)
        (self.history_dir / f"{identity_key}.json").write_text(data, encoding="utf-8")

    def list(self, identity_key: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Return the newest records first; unreadable history reads as empty."""
        try:
            records = self._read(identity_key)
        except (OSError, StorageError, ValueError) as exc:
            logger.error("Failed to load history for %s: %s", identity_key, exc)
            return []
        return records[:limit] if limit else records

    def record(self, identity_key: str, record: HistoryRecord) -> PersistResult:
        """Prepend ``record`` and drop the oldest entries beyond the cap."""
        with self._lock:
            try:
                records = [item for item in self._read(identity_key) if item.id != record.id]
                records.insert(0, record)
                self._write(identity_key, records[: self.limit])
            except (OSError, StorageError, ValueError, KeyError, TypeError) as exc:
                return PersistResult.failure(str(exc))
        return PersistResult.success()

    def delete(self, identity_key: str, record_id: Optional[str] = None) -> int:
        """Delete one record, or every record when ``record_id`` is None.

        Stored images of removed records are deleted as well. Returns the
        number of records removed.
        """
        with self._lock:
            records = self._read(identity_key)
            if record_id is None:
                removed, kept = records, []
            else:
                removed = [item for item in records if item.id == record_id]
                kept = [item for item in records if item.id != record_id]
            if not removed:
                return 0
            self._write(identity_key, kept)

        if self.storage is not None:
            for item in removed:
                for image in item.images:
                    if image.key:
                        self.storage.delete(image.key)
        logger.info("Deleted %d history record(s) for %s", len(removed), identity_key)
        return len(removed)
