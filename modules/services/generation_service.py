"""Orchestration of quota, submission, status polling and history."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from config.settings import AppConfig
from modules.pipelines.errors import GenerationError
from modules.pipelines.materializer import MaterializeContext, ResultMaterializer
from modules.pipelines.outpaint import OutpaintComposite, OutpaintRequest
from modules.pipelines.poller import TaskPoller
from modules.pipelines.submitter import GenerationRequest, TaskSubmitter
from modules.pipelines.tasks import GenerationTask, TaskState, expire
from modules.providers.registry import ProviderRegistry
from modules.quota.gate import QuotaDecision, QuotaGate
from modules.quota.ledgers import AccountCreditLedger, GuestQuotaLedger, Identity
from modules.services.account_store import AccountStore, FileAccountStore, StorageAccountStore
from modules.services.history_service import GenerationHistoryService, HistoryRecord
from modules.services.storage_service import StorageService, build_storage
from modules.utils.cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackedTask:
    task: GenerationTask
    identity: Identity
    context: MaterializeContext
    composite: Optional[OutpaintComposite] = None
    record: Optional[HistoryRecord] = None


@dataclass(frozen=True, slots=True)
class StatusReport:
    """What a status query tells the caller about one task."""

    task_id: str
    state: TaskState
    images: Tuple[str, ...] = ()
    error: Optional[str] = None
    record: Optional[HistoryRecord] = None

    def to_payload(self) -> Dict[str, Any]:
        status = TaskState.FAILED if self.state is TaskState.TIMED_OUT else self.state
        payload: Dict[str, Any] = {"success": True, "taskId": self.task_id, "status": status.value}
        if self.state is TaskState.SUCCEEDED:
            payload["images"] = list(self.images)
            if self.record is not None:
                payload["recordId"] = self.record.id
        elif self.error:
            payload["error"] = self.error
        if self.state is TaskState.TIMED_OUT:
            payload["timedOut"] = True
        return payload


@dataclass(frozen=True, slots=True)
class BeginResult:
    task: GenerationTask
    decision: QuotaDecision


class GenerationService:
    """Front door for one generation: admit, submit, then answer status queries.

    A task is materialized at most once; later status queries for a finished
    task return the cached report without contacting the provider.
    """

    def __init__(
        self,
        config: AppConfig,
        gate: QuotaGate,
        submitter: TaskSubmitter,
        poller: TaskPoller,
        materializer: ResultMaterializer,
        history: GenerationHistoryService,
        accounts: Optional[AccountStore] = None,
    ) -> None:
        self.config = config
        self.gate = gate
        self.submitter = submitter
        self.poller = poller
        self.materializer = materializer
        self.history = history
        self.accounts = accounts
        self._tasks: TTLCache[str, TrackedTask] = TTLCache(ttl_seconds=6 * 60 * 60)
        self._reports: TTLCache[str, StatusReport] = TTLCache(ttl_seconds=6 * 60 * 60)
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        storage: Optional[StorageService] = None,
        registry: Optional[ProviderRegistry] = None,
    ) -> "GenerationService":
        """Wire the default collaborators; ``storage`` defaults to ``build_storage``."""
        storage = storage if storage is not None else build_storage(config)
        registry = registry or ProviderRegistry.from_config(config, storage)
        if storage is not None:
            accounts: AccountStore = StorageAccountStore(storage, initial_credits=config.initial_credits)
        else:
            accounts = FileAccountStore(config.users_path, initial_credits=config.initial_credits)
        history = GenerationHistoryService(config.history_dir, storage=storage, limit=config.history_limit)
        gate = QuotaGate(
            GuestQuotaLedger(limit=config.guest_free_limit, ttl_seconds=config.guest_ttl_seconds),
            AccountCreditLedger(accounts, cost=config.credits_per_generation),
        )
        return cls(
            config,
            gate=gate,
            submitter=TaskSubmitter(registry, max_reference_images=config.max_reference_images),
            poller=TaskPoller(registry),
            materializer=ResultMaterializer(
                history,
                storage=storage,
                timeout=config.request_timeout,
                max_workers=config.fetch_workers,
            ),
            history=history,
            accounts=accounts,
        )

    def begin(self, request: GenerationRequest, identity: Identity) -> BeginResult:
        """Validate, charge the identity, then submit.

        Credits are spent before the provider is called and are not returned
        when submission fails.
        """
        provider = self.submitter.validate(request)
        decision = self.gate.admit(identity)
        task_id = self.submitter.submit(request)
        task = GenerationTask(task_id=task_id)
        tracked = TrackedTask(
            task=task,
            identity=identity,
            context=MaterializeContext(
                prompt=request.history_prompt,
                mode=request.mode.value,
                model_id=request.model_id,
                provider=provider.name,
            ),
            composite=request.composite if isinstance(request, OutpaintRequest) else None,
        )
        with self._lock:
            self._tasks.set(task_id, tracked)
        return BeginResult(task=task, decision=decision)

    def _tracked(self, task_id: str, identity: Optional[Identity]) -> TrackedTask:
        tracked = self._tasks.get(task_id)
        if tracked is None:
            raise GenerationError("任务不存在或已过期")
        if identity is not None and tracked.identity != identity:
            raise GenerationError("无权访问该任务")
        return tracked

    def status(self, task_id: str, identity: Optional[Identity] = None) -> StatusReport:
        """Poll once (unless already terminal) and materialize on the first success."""
        tracked = self._tracked(task_id, identity)
        with self._lock:
            cached = self._reports.get(task_id)
        if cached is not None:
            return cached

        result = self.poller.query(task_id)
        state = tracked.task.observe(result)

        if state is TaskState.SUCCEEDED:
            with self._lock:
                cached = self._reports.get(task_id)
                if cached is not None:
                    return cached
                record = self.materializer.materialize(task_id, result.images, tracked.identity, tracked.context)
                tracked.record = record
                report = StatusReport(
                    task_id=task_id,
                    state=state,
                    images=tuple(image.url for image in record.images),
                    record=record,
                )
                self._reports.set(task_id, report)
            logger.info("Task %s succeeded with %d image(s)", task_id, len(record.images))
            return report

        if state is TaskState.FAILED:
            report = StatusReport(task_id=task_id, state=state, error=tracked.task.error_message)
            with self._lock:
                self._reports.set(task_id, report)
            logger.warning("Task %s failed: %s", task_id, tracked.task.error_message)
            return report

        return StatusReport(task_id=task_id, state=state)

    def expire(self, task_id: str) -> StatusReport:
        """Give up on a task client-side after the caller's attempt budget."""
        tracked = self._tracked(task_id, None)
        with self._lock:
            cached = self._reports.get(task_id)
            if cached is not None:
                return cached
            tracked.task.state = expire(tracked.task.state)
            report = StatusReport(task_id=task_id, state=tracked.task.state, error="生成超时，请稍后重试")
            self._reports.set(task_id, report)
        logger.warning("Task %s timed out after %d attempts", task_id, tracked.task.attempts)
        return report

    def composite_for(self, task_id: str) -> Optional[OutpaintComposite]:
        tracked = self._tasks.get(task_id)
        return tracked.composite if tracked else None

    def list_history(self, identity: Identity, limit: Optional[int] = None) -> List[HistoryRecord]:
        return self.history.list(identity.storage_key, limit=limit)

    def delete_history(self, identity: Identity, record_id: Optional[str] = None) -> int:
        return self.history.delete(identity.storage_key, record_id)
