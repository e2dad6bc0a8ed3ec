"""Structured logging setup and the per-invocation action audit line."""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

import structlog

from .config import LoggingSettings, logging_settings

ACTIONS = ("discovery", "crawl", "export", "refresh", "usage_increment")

_action_logger = structlog.get_logger("leadscope.actions")


def configure_logging(settings: LoggingSettings = logging_settings) -> None:
    """Route structlog through stdlib logging with ISO timestamps.

    JSON lines by default; ``LOG_JSON=false`` switches to the console renderer.
    """

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def log_action(
    *,
    user_id: Any,
    action: str,
    result_summary: str,
    gated: bool = False,
    dataset_id: Any = None,
    error: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Emit one audit event for a worker invocation and return its payload."""

    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}")
    payload: Dict[str, Any] = {
        "user_id": str(user_id),
        "action": action,
        "dataset_id": str(dataset_id) if dataset_id is not None else None,
        "result_summary": result_summary,
        "gated": gated,
        "error": error,
        "metadata": metadata or {},
    }
    if error:
        _action_logger.warning("action", **payload)
    else:
        _action_logger.info("action", **payload)
    return payload
