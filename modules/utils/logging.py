"""Logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

from config.settings import AppConfig


def setup_logging(config: AppConfig, level: int = logging.INFO) -> logging.Logger:
    """Configure and return the application logger."""
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "application.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # urllib3 logs every connection at DEBUG; keep poll loops readable
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
    return logging.getLogger("nanophoto")
