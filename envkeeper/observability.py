"""Logging configuration and redaction helpers."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import structlog

from envkeeper.settings import get_settings


_SAFE_TEXT_RE = re.compile(r"[^\w .,:;=@/#'()\[\]+-]+")


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog on top of the stdlib ``logging`` module."""

    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.log_format != "console"

    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(message)s")
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def sanitize_text(value: Any, *, limit: int = 240) -> str:
    """Return a single-line, length-limited rendering of ``value`` for audit records."""

    if value is None:
        return ""
    text = _SAFE_TEXT_RE.sub(" ", str(value))
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > limit:
        text = text[: limit - 1] + "…"
    return text


__all__ = ["configure_logging", "sanitize_text"]
