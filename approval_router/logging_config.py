"""Structlog setup for the approval router."""

from __future__ import annotations

import logging
from typing import Any, MutableMapping

import structlog

SERVICE_NAME = "approval-router"
DEFAULT_LEVEL = logging.INFO


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else DEFAULT_LEVEL


def _add_service(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: str | int = DEFAULT_LEVEL) -> None:
    """Emit one JSON object per log line, carrying any bound ``trace_id``.

    Records below *level* are dropped before rendering. Unknown level names
    fall back to ``INFO``.
    """

    numeric_level = _resolve_level(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=numeric_level, format="%(message)s")
    logging.getLogger().setLevel(numeric_level)
