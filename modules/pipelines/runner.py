"""Caller-side poll loop and outpaint fix-up."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from modules.pipelines.errors import ReconstructionError, TaskFailedError, TaskQueryError
from modules.pipelines.outpaint import OutpaintComposite, ReconstructionStage
from modules.pipelines.submitter import GenerationRequest
from modules.pipelines.tasks import TaskState
from modules.quota.ledgers import Identity
from modules.services.generation_service import GenerationService, StatusReport
from modules.utils.image_utils import encode_image

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerationOutcome:
    """Final report plus the bytes of every output image, reconstructed for outpaint."""

    report: StatusReport
    outputs: List[bytes] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.report.state is TaskState.SUCCEEDED

    def raise_for_status(self) -> None:
        if not self.succeeded:
            raise TaskFailedError(self.report.task_id, self.report.error or self.report.state.value)


class GenerationRunner:
    """Drive ``GenerationService.status`` until the task settles.

    Polls are sequential, ``interval`` seconds apart, and stop after
    ``max_attempts``; running out of attempts yields TIMED_OUT rather than
    FAILED. A status round trip that errors still counts as an attempt.
    """

    def __init__(
        self,
        service: GenerationService,
        interval: float = 2.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
        reconstruction: Optional[ReconstructionStage] = None,
    ) -> None:
        self.service = service
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.reconstruction = reconstruction or ReconstructionStage()

    def wait(
        self,
        task_id: str,
        identity: Optional[Identity] = None,
        on_update: Optional[Callable[[StatusReport], None]] = None,
    ) -> StatusReport:
        for attempt in range(1, self.max_attempts + 1):
            try:
                report = self.service.status(task_id, identity)
            except TaskQueryError as exc:
                logger.warning("Status query %d/%d for %s failed: %s", attempt, self.max_attempts, task_id, exc)
            else:
                if on_update is not None:
                    on_update(report)
                if report.state.terminal:
                    return report
            if attempt < self.max_attempts:
                self._sleep(self.interval)
        return self.service.expire(task_id)

    def finalize(self, report: StatusReport, composite: Optional[OutpaintComposite] = None) -> List[bytes]:
        """Load output bytes; for outpaint paste the source back, keeping the raw output on failure."""
        if report.record is None:
            return []
        outputs: List[bytes] = []
        for image in report.record.images:
            try:
                data = self.service.materializer.load_bytes(image)
            except Exception as exc:  # noqa: BLE001
                logger.error("Could not load output image %s: %s", image.title, exc)
                continue
            if composite is not None:
                try:
                    fixed = self.reconstruction.reconstruct(data, composite)
                    data = encode_image(fixed, "image/png")
                except ReconstructionError as exc:
                    logger.warning("Reconstruction failed, keeping provider output: %s", exc)
            outputs.append(data)
        return outputs

    def run(
        self,
        request: GenerationRequest,
        identity: Identity,
        on_update: Optional[Callable[[StatusReport], None]] = None,
    ) -> GenerationOutcome:
        started = self.service.begin(request, identity)
        task_id = started.task.task_id
        report = self.wait(task_id, identity, on_update=on_update)
        if report.state is not TaskState.SUCCEEDED:
            return GenerationOutcome(report=report)
        return GenerationOutcome(report=report, outputs=self.finalize(report, self.service.composite_for(task_id)))
