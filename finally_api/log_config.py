"""Shared logging configuration for the API process.

Call ``setup()`` once when the application is built to get ISO-8601
timestamps on every log line.
"""

from __future__ import annotations

import logging

_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def setup(level: str = "INFO") -> None:
    """Configure the root logger with timestamped output.

    Args:
        level: Level name such as ``"DEBUG"``; unknown names fall back to INFO.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(
        level=resolved,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
    )
