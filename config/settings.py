"""Configuration helpers for the nanophoto generation service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

DEFAULT_MODELS: list[dict[str, str]] = [
    {
        "label": "Z-Image Turbo",
        "value": "Tongyi-MAI/Z-Image-Turbo",
        "provider": "modelscope",
        "description": "通义万相快速图像生成模型",
    },
    {
        "label": "SDXL 1.0",
        "value": "AI-ModelScope/stable-diffusion-xl-base-1.0",
        "provider": "modelscope",
        "description": "Stable Diffusion XL 基础模型",
    },
    {
        "label": "SD3 Medium",
        "value": "AI-ModelScope/stable-diffusion-3-medium",
        "provider": "modelscope",
        "description": "Stable Diffusion 3 中型模型",
    },
    {
        "label": "Nano Banana",
        "value": "gemini-2.5-flash-image",
        "provider": "gemini",
        "description": "快速高效，适合批量生成",
    },
    {
        "label": "Nano Banana Pro",
        "value": "gemini-3-pro-image-preview",
        "provider": "gemini",
        "description": "专业级质量，支持高分辨率和复杂指令",
    },
]


@dataclass(slots=True)
class AppConfig:
    """Centralized application configuration."""

    data_dir: Path = Path("data")
    output_dir: Path = Path("outputs")
    log_dir: Path = Path("logs")
    modelscope_base_url: str = "https://api-inference.modelscope.cn/"
    modelscope_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/"
    gemini_key: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket: Optional[str] = None
    s3_public_url: Optional[str] = None
    s3_secure: bool = True
    default_model_id: str = "Tongyi-MAI/Z-Image-Turbo"
    guest_free_limit: int = 5
    guest_ttl_seconds: float = 24 * 60 * 60
    credits_per_generation: int = 1
    initial_credits: int = 100
    history_limit: int = 100
    max_reference_images: int = 14
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 60
    request_timeout: float = 30.0
    fetch_workers: int = 4
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def history_dir(self) -> Path:
        return Path(self.data_dir) / "history"

    @property
    def users_path(self) -> Path:
        return Path(self.data_dir) / "users.json"

    def storage_configured(self) -> bool:
        """Return True when every S3 setting needed for uploads is present."""
        return bool(self.s3_endpoint and self.s3_access_key and self.s3_secret_key and self.s3_bucket)

    def available_models(self) -> list[dict[str, str]]:
        models = self.metadata.get("available_models")
        if isinstance(models, list) and models:
            return [item for item in models if isinstance(item, dict)]
        return list(DEFAULT_MODELS)


def _load_env_file(path: Path) -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not path.exists():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ[key.strip()] = value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _normalize_base_url(url: str) -> str:
    # endpoints are joined as f"{base}v1/..." so the trailing slash matters
    return url if url.endswith("/") else f"{url}/"


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Return an AppConfig instance with environment-aware settings."""
    env_path = Path(config_path) if config_path else Path(".env")
    _load_env_file(env_path)

    data_dir = Path(os.getenv("DATA_DIR", "data")).expanduser().resolve()
    output_dir = Path(os.getenv("OUTPUT_DIR", "outputs")).expanduser().resolve()
    log_dir = Path(os.getenv("LOG_DIR", "logs")).expanduser().resolve()

    available_models: list[dict[str, str]] = []
    seen_values: set[str] = set()

    def _add_option(label: str, value: str, provider: str, description: str = "") -> None:
        if not value or value in seen_values:
            return
        available_models.append(
            {"label": label, "value": value, "provider": provider, "description": description}
        )
        seen_values.add(value)

    for item in DEFAULT_MODELS:
        _add_option(item["label"], item["value"], item["provider"], item.get("description", ""))

    # EXTRA_MODELS=provider:model_id,provider:model_id
    for entry in (os.getenv("EXTRA_MODELS") or "").split(","):
        entry = entry.strip()
        if ":" not in entry:
            continue
        provider, model_id = entry.split(":", 1)
        _add_option(model_id.strip(), model_id.strip(), provider.strip())

    default_model_id = os.getenv("DEFAULT_MODEL_ID") or available_models[0]["value"]

    metadata: dict[str, Any] = {
        "available_models": available_models,
    }

    return AppConfig(
        data_dir=data_dir,
        output_dir=output_dir,
        log_dir=log_dir,
        modelscope_base_url=_normalize_base_url(
            os.getenv("MODELSCOPE_BASE_URL", "https://api-inference.modelscope.cn/")
        ),
        modelscope_key=os.getenv("MODELSCOPE_API_KEY"),
        gemini_base_url=_normalize_base_url(
            os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/")
        ),
        gemini_key=os.getenv("GEMINI_API_KEY"),
        s3_endpoint=os.getenv("S3_ENDPOINT"),
        s3_access_key=os.getenv("S3_ACCESS_KEY"),
        s3_secret_key=os.getenv("S3_SECRET_KEY"),
        s3_bucket=os.getenv("S3_BUCKET"),
        s3_public_url=(os.getenv("S3_PUBLIC_URL") or "").rstrip("/") or None,
        s3_secure=_env_bool("S3_SECURE", True),
        default_model_id=default_model_id,
        guest_free_limit=_env_int("GUEST_FREE_LIMIT", 5),
        credits_per_generation=_env_int("CREDITS_PER_GENERATION", 1),
        initial_credits=_env_int("INITIAL_CREDITS", 100),
        history_limit=_env_int("HISTORY_LIMIT", 100),
        max_reference_images=_env_int("MAX_REFERENCE_IMAGES", 14),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 2.0),
        max_poll_attempts=_env_int("MAX_POLL_ATTEMPTS", 60),
        request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
        fetch_workers=_env_int("FETCH_WORKERS", 4),
        metadata=metadata,
    )
