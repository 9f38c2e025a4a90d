"""Logging helpers for organising universe workers."""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_LEVEL_ENV = "OU_LOG_LEVEL"


def resolve_log_level(value: int | str | None) -> int:
    if isinstance(value, int):
        return value
    name = str(value or os.getenv(LOG_LEVEL_ENV) or "INFO").strip().upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {name!r}")
    return level


def configure_logging(level: int | str | None = None, log_paths: list[str] | None = None) -> None:
    """Install stream (and optional file) handlers unless logging is already configured."""
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for entry in log_paths or []:
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=resolve_log_level(level),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
    )
