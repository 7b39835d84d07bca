"""Provider protocol for remote image generation."""

from __future__ import annotations

from typing import Any, Dict, Protocol

from modules.pipelines.common import ProviderPayload
from modules.pipelines.tasks import PollResult


class GenerationProvider(Protocol):
    """A remote backend that accepts submissions and reports task status.

    ``submit`` raises ``SubmissionError`` when the provider rejects the
    request synchronously; ``query`` raises ``TaskQueryError`` when the
    status round trip itself fails.
    """

    name: str

    def submit(self, payload: ProviderPayload) -> str:
        ...

    def query(self, task_id: str) -> PollResult:
        ...

    def check_status(self) -> Dict[str, Any]:
        ...
