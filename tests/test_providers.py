"""ModelScope / Gemini 客户端的单元测试（不访问网络）。"""

from __future__ import annotations

import base64
from typing import Any, Optional

import pytest
import requests

from modules.pipelines.common import ProviderPayload
from modules.pipelines.errors import SubmissionError, TaskQueryError
from modules.pipelines.tasks import TaskState
from modules.providers.gemini import GeminiProvider
from modules.providers.modelscope import ModelScopeProvider


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: Optional[dict] = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> dict:
        return self._payload


class DummySession:
    """记录请求参数并按顺序返回预设响应。"""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict]] = []

    def _next(self, method: str, url: str, kwargs: dict) -> DummyResponse:
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url: str, **kwargs: Any) -> DummyResponse:
        return self._next("POST", url, kwargs)

    def get(self, url: str, **kwargs: Any) -> DummyResponse:
        return self._next("GET", url, kwargs)


def _payload() -> ProviderPayload:
    return ProviderPayload(model_id="org/model", prompt="a red circle", width=1024, height=576)


def test_modelscope_submit_uses_async_mode():
    session = DummySession(DummyResponse(payload={"task_id": "t1"}))
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    task_id = provider.submit(_payload())

    method, url, kwargs = session.calls[0]
    assert task_id == "t1"
    assert method == "POST"
    assert url == "https://api.example.com/v1/images/generations"
    assert kwargs["headers"]["X-ModelScope-Async-Mode"] == "true"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["json"] == {"model": "org/model", "prompt": "a red circle", "width": 1024, "height": 576}


def test_modelscope_body_carries_negative_prompt():
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=DummySession())
    payload = ProviderPayload(model_id="org/model", prompt="a cat", negative_prompt="blurry, low quality")

    body = provider.build_body(payload)

    assert body == {"model": "org/model", "prompt": "a cat", "negative_prompt": "blurry, low quality"}


def test_modelscope_submit_surfaces_provider_message():
    session = DummySession(DummyResponse(status_code=401, text="invalid token"))
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    with pytest.raises(SubmissionError) as excinfo:
        provider.submit(_payload())

    assert "invalid token" in str(excinfo.value)
    assert excinfo.value.status_code == 401


def test_modelscope_submit_requires_key():
    session = DummySession()
    provider = ModelScopeProvider("https://api.example.com/", None, session=session)

    with pytest.raises(SubmissionError):
        provider.submit(_payload())
    assert session.calls == []


def test_modelscope_submit_without_task_id():
    session = DummySession(DummyResponse(payload={}))
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    with pytest.raises(SubmissionError, match="任务 ID"):
        provider.submit(_payload())


@pytest.mark.parametrize(
    ("payload", "state"),
    [
        ({"task_status": "PENDING"}, TaskState.PENDING),
        ({"task_status": "RUNNING"}, TaskState.PROCESSING),
        ({"task_status": "PROCESSING"}, TaskState.PROCESSING),
        ({"task_status": "SUCCEED", "output_images": ["https://x/1.png"]}, TaskState.SUCCEEDED),
        ({"task_status": "SUCCEED", "output_images": []}, TaskState.FAILED),
        ({"task_status": "FAILED", "error_message": "nsfw"}, TaskState.FAILED),
    ],
)
def test_modelscope_query_maps_status(payload, state):
    session = DummySession(DummyResponse(payload=payload))
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    result = provider.query("t1")

    _, url, kwargs = session.calls[0]
    assert url == "https://api.example.com/v1/tasks/t1"
    assert kwargs["headers"]["X-ModelScope-Task-Type"] == "image_generation"
    assert result.state is state


def test_modelscope_query_carries_messages():
    session = DummySession(
        DummyResponse(payload={"task_status": "FAILED"}),
        DummyResponse(payload={"task_status": "FAILED", "error_message": "nsfw"}),
    )
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    assert provider.query("t1").error_message == "图像生成失败"
    assert provider.query("t1").error_message == "nsfw"


def test_modelscope_query_transport_error():
    session = DummySession(requests.ConnectionError("boom"))
    provider = ModelScopeProvider("https://api.example.com/", "secret", session=session)

    with pytest.raises(TaskQueryError):
        provider.query("t1")


def test_modelscope_check_status_without_key():
    provider = ModelScopeProvider("https://api.example.com/", None, session=DummySession())
    assert provider.check_status()["configured"] is False


def test_gemini_wraps_inline_result_as_task():
    image = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")
    session = DummySession(
        DummyResponse(
            payload={
                "candidates": [
                    {"content": {"parts": [{"text": "here"}, {"inlineData": {"mimeType": "image/png", "data": image}}]}}
                ]
            }
        )
    )
    provider = GeminiProvider("https://gemini.example.com/v1beta/", "key", session=session)

    task_id = provider.submit(ProviderPayload(model_id="gemini-2.5-flash-image", prompt="cat"))
    result = provider.query(task_id)

    _, url, kwargs = session.calls[0]
    assert url == "https://gemini.example.com/v1beta/models/gemini-2.5-flash-image:generateContent"
    assert kwargs["headers"]["x-goog-api-key"] == "key"
    assert result.state is TaskState.SUCCEEDED
    assert result.images[0] == f"data:image/png;base64,{image}"


def test_gemini_text_only_answer_fails_task():
    session = DummySession(
        DummyResponse(payload={"candidates": [{"content": {"parts": [{"text": "I can't draw that"}]}}]})
    )
    provider = GeminiProvider("https://gemini.example.com/v1beta/", "key", session=session)

    result = provider.query(provider.submit(ProviderPayload(model_id="m", prompt="p")))

    assert result.state is TaskState.FAILED
    assert result.error_message == "I can't draw that"


def test_gemini_unknown_task():
    provider = GeminiProvider("https://gemini.example.com/v1beta/", "key", session=DummySession())
    with pytest.raises(TaskQueryError):
        provider.query("gemini_missing")
