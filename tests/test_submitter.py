"""TaskSubmitter / TaskPoller 路由与校验测试。"""

from __future__ import annotations

from typing import List

import pytest

from modules.pipelines.common import ImageRef, ProviderPayload
from modules.pipelines.errors import SubmissionError, TaskQueryError, ValidationError
from modules.pipelines.img2img import ImageToImageRequest
from modules.pipelines.poller import TaskPoller
from modules.pipelines.submitter import TaskSubmitter
from modules.pipelines.tasks import PollResult, TaskState
from modules.pipelines.text2img import TextToImageRequest
from modules.providers.registry import ProviderRegistry


class DummyProvider:
    """记录提交内容的假服务商。"""

    def __init__(self, name: str, task_id: str = "t1") -> None:
        self.name = name
        self.task_id = task_id
        self.submitted: List[ProviderPayload] = []
        self.queried: List[str] = []
        self.reject_with: str | None = None

    def submit(self, payload: ProviderPayload) -> str:
        if self.reject_with:
            raise SubmissionError(self.reject_with, status_code=400)
        self.submitted.append(payload)
        return self.task_id

    def query(self, task_id: str) -> PollResult:
        self.queried.append(task_id)
        return PollResult.processing()

    def check_status(self) -> dict:
        return {"configured": True, "valid": True, "message": "ok"}


CATALOG = [
    {"label": "Demo", "value": "demo-model", "provider": "alpha"},
    {"label": "Other", "value": "other-model", "provider": "beta"},
]


@pytest.fixture
def providers():
    return DummyProvider("alpha", "t1"), DummyProvider("beta", "t2")


@pytest.fixture
def registry(providers):
    alpha, beta = providers
    return ProviderRegistry({"alpha": alpha, "beta": beta}, CATALOG)


def test_submit_routes_by_catalog(providers, registry):
    alpha, beta = providers
    submitter = TaskSubmitter(registry)

    task_id = submitter.submit(TextToImageRequest(prompt="a red circle", model_id="other-model"))

    assert task_id == "t2"
    assert alpha.submitted == []
    assert beta.submitted[0].prompt == "a red circle"


def test_poller_uses_provider_that_owns_task(providers, registry):
    alpha, beta = providers
    TaskSubmitter(registry).submit(TextToImageRequest(prompt="p", model_id="other-model"))

    result = TaskPoller(registry).query("t2")

    assert result.state is TaskState.PROCESSING
    assert beta.queried == ["t2"]
    assert alpha.queried == []


def test_poller_rejects_unknown_task(registry):
    with pytest.raises(TaskQueryError):
        TaskPoller(registry).query("never-submitted")


@pytest.mark.parametrize(
    "request_",
    [
        TextToImageRequest(prompt="   ", model_id="demo-model"),
        TextToImageRequest(prompt="p", model_id=""),
        TextToImageRequest(prompt="p", model_id="unknown-model"),
    ],
)
def test_validation_happens_before_network(providers, registry, request_):
    alpha, beta = providers

    with pytest.raises(ValidationError):
        TaskSubmitter(registry).submit(request_)

    assert alpha.submitted == [] and beta.submitted == []


def test_reference_image_limit(providers, registry):
    alpha, _ = providers
    refs = tuple(ImageRef(data=bytes([i])) for i in range(3))
    submitter = TaskSubmitter(registry, max_reference_images=2)

    with pytest.raises(ValidationError, match="最多 2 张"):
        submitter.submit(ImageToImageRequest(prompt="p", model_id="demo-model", references=refs))
    assert alpha.submitted == []

    submitter.submit(ImageToImageRequest(prompt="p", model_id="demo-model", references=refs[:2]))
    assert len(alpha.submitted[0].images) == 2


def test_submission_error_is_surfaced_verbatim(providers, registry):
    alpha, _ = providers
    alpha.reject_with = "401 invalid api key"

    with pytest.raises(SubmissionError) as excinfo:
        TaskSubmitter(registry).submit(TextToImageRequest(prompt="p", model_id="demo-model"))

    assert str(excinfo.value) == "401 invalid api key"


def test_unconfigured_provider_is_validation_error():
    registry = ProviderRegistry({}, CATALOG)
    with pytest.raises(ValidationError, match="未配置"):
        TaskSubmitter(registry).validate(TextToImageRequest(prompt="p", model_id="demo-model"))
