"""Turn finished provider output into persisted images and a history record."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import requests

from modules.quota.ledgers import Identity
from modules.services.history_service import (
    GenerationHistoryService,
    HistoryRecord,
    PersistedImage,
    new_record_id,
)
from modules.services.storage_service import StorageService
from modules.utils.image_utils import extension_for, fetch_image_bytes, is_data_url, to_data_url

logger = logging.getLogger(__name__)

Fetched = Optional[Tuple[bytes, str]]


@dataclass(frozen=True, slots=True)
class MaterializeContext:
    """Request details copied onto the history record."""

    prompt: str
    mode: str
    model_id: str
    provider: Optional[str] = None


class ResultMaterializer:
    """Fetch provider images, persist them and append the history record."""

    def __init__(
        self,
        history: GenerationHistoryService,
        storage: Optional[StorageService] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        max_workers: int = 4,
        id_factory: Callable[[], str] = new_record_id,
    ) -> None:
        self.history = history
        self.storage = storage
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self._session = session or requests.Session()
        self._id_factory = id_factory

    def _fetch(self, url: str) -> Fetched:
        try:
            return fetch_image_bytes(url, session=self._session, timeout=self.timeout)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Failed to fetch generated image %s: %s", url[:120], exc)
            return None

    def fetch_all(self, urls: Sequence[str]) -> List[Fetched]:
        """Fetch concurrently; ``map`` keeps results in the provider's order."""
        if not urls:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(urls))) as pool:
            return list(pool.map(self._fetch, urls))

    def _persist_image(
        self,
        identity: Identity,
        record_id: str,
        index: int,
        url: str,
        fetched: Fetched,
    ) -> PersistedImage:
        title = f"Generated Image {index + 1}"
        source_url = None if is_data_url(url) else url
        if fetched is None:
            return PersistedImage(url=url, title=title, source_url=source_url)

        data, mime_type = fetched
        if self.storage is not None:
            key = f"output/{identity.storage_key}/{record_id}_{index}.{extension_for(mime_type)}"
            try:
                stored_url = self.storage.save_image(key, data, mime_type)
                return PersistedImage(url=stored_url, key=key, title=title, source_url=source_url)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Upload of %s failed, falling back to inline data: %s", key, exc)
        return PersistedImage(url=to_data_url(data, mime_type), title=title, source_url=source_url)

    def materialize(
        self,
        task_id: str,
        images: Sequence[str],
        identity: Identity,
        context: MaterializeContext,
    ) -> HistoryRecord:
        record_id = self._id_factory()
        fetched = self.fetch_all(images)
        persisted = [
            self._persist_image(identity, record_id, index, url, result)
            for index, (url, result) in enumerate(zip(images, fetched))
        ]
        record = HistoryRecord(
            id=record_id,
            prompt=context.prompt,
            mode=context.mode,
            model_id=context.model_id,
            images=persisted,
            task_id=task_id,
            provider=context.provider,
        )
        outcome = self.history.record(identity.storage_key, record)
        if not outcome.ok:
            logger.warning("History not saved for task %s: %s", task_id, outcome.error)
        return record

    def load_bytes(self, image: PersistedImage) -> bytes:
        """Return the bytes behind a persisted image, from storage when it has a key."""
        if image.key and self.storage is not None:
            data = self.storage.get(image.key)
            if data is not None:
                return data
        data, _ = fetch_image_bytes(image.url, session=self._session, timeout=self.timeout)
        return data
