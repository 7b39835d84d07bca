"""文生图请求与配置加载的单元测试。"""

from __future__ import annotations

import pytest

from config.settings import AppConfig, DEFAULT_MODELS, load_config
from modules.pipelines.common import GenerationMode
from modules.pipelines.text2img import TextToImageRequest


@pytest.fixture
def clean_env(monkeypatch):
    """清理可能影响配置的环境变量。"""
    for name in (
        "EXTRA_MODELS",
        "DEFAULT_MODEL_ID",
        "MODELSCOPE_BASE_URL",
        "MODELSCOPE_API_KEY",
        "GUEST_FREE_LIMIT",
        "MAX_POLL_ATTEMPTS",
        "S3_ENDPOINT",
        "S3_ACCESS_KEY",
        "S3_SECRET_KEY",
        "S3_BUCKET",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch


def test_payload_contains_prompt_only():
    request = TextToImageRequest(prompt="  a red circle  ", model_id="demo-model", aspect_ratio="1:1")

    payload = request.to_payload()

    assert request.mode is GenerationMode.TEXT2IMG
    assert payload.prompt == "a red circle"
    assert payload.model_id == "demo-model"
    assert payload.images == ()
    assert payload.aspect_ratio == "1:1"


def test_history_prompt_is_stripped_prompt():
    request = TextToImageRequest(prompt="\n夕阳下的城市\n", model_id="demo-model")
    assert request.history_prompt == "夕阳下的城市"


def test_blank_prompt_has_empty_effective_prompt():
    request = TextToImageRequest(prompt="   ", model_id="demo-model")
    assert request.effective_prompt == ""


def test_load_config_defaults(clean_env, tmp_path):
    config = load_config(str(tmp_path / "missing.env"))

    assert config.guest_free_limit == 5
    assert config.max_poll_attempts == 60
    assert config.poll_interval_seconds == pytest.approx(2.0)
    assert config.default_model_id == DEFAULT_MODELS[0]["value"]
    assert config.modelscope_base_url.endswith("/")
    assert config.storage_configured() is False


def test_load_config_reads_overrides(clean_env, tmp_path):
    clean_env.setenv("EXTRA_MODELS", "modelscope:org/custom-model, bogus")
    clean_env.setenv("DEFAULT_MODEL_ID", "org/custom-model")
    clean_env.setenv("MODELSCOPE_BASE_URL", "https://example.com/api")
    clean_env.setenv("GUEST_FREE_LIMIT", "3")

    config = load_config(str(tmp_path / "missing.env"))

    values = [item["value"] for item in config.available_models()]
    assert "org/custom-model" in values
    assert config.default_model_id == "org/custom-model"
    assert config.modelscope_base_url == "https://example.com/api/"
    assert config.guest_free_limit == 3


def test_available_models_falls_back_to_defaults():
    config = AppConfig()
    assert config.available_models() == DEFAULT_MODELS


def test_negative_prompt_reaches_payload():
    request = TextToImageRequest(prompt="cat", model_id="demo-model", negative_prompt="  blurry  ")
    assert request.to_payload().negative_prompt == "blurry"


def test_blank_negative_prompt_is_dropped():
    request = TextToImageRequest(prompt="cat", model_id="demo-model", negative_prompt="   ")
    assert request.to_payload().negative_prompt is None
