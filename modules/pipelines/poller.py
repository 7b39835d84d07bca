"""Single status round trips against the provider that owns a task."""

from __future__ import annotations

import logging

from modules.pipelines.tasks import PollResult
from modules.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class TaskPoller:
    """One ``query`` is exactly one provider request; looping is the caller's job."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def query(self, task_id: str) -> PollResult:
        provider = self.registry.for_task(task_id)
        result = provider.query(task_id)
        logger.debug("Task %s polled via %s: %s", task_id, provider.name, result.state.value)
        return result
