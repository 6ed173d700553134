"""Logging helpers for scripts that drive the draw engine."""

from __future__ import annotations

import hashlib
import logging
from typing import Union


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def redact(value: str, *, length: int = 12) -> str:
    """Return a short SHA-256 prefix of ``value`` that is safe to log."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]
