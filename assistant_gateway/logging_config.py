"""
structlog setup for the gateway.

Production renders one JSON object per line; development uses the
colored console renderer. Entries emitted while serving an HTTP request
carry its ``trace_id``; entries emitted inside a socket connection also
carry ``connection_id`` and, once authenticated, ``session_id``.

Usage:
    from assistant_gateway.logging_config import bind_connection, get_logger

    logger = get_logger(__name__)
    bind_connection(connection.connection_id)
    logger.info("chat_connected")
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Optional

import structlog

from assistant_gateway.config import get_settings

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
session_id_var: ContextVar[str] = ContextVar("session_id", default="")
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")

# Explicit keyword arguments win over the ambient session id only
_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str], bool], ...] = (
    ("trace_id", trace_id_var, True),
    ("connection_id", connection_id_var, True),
    ("session_id", session_id_var, False),
)

_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "hpack", "asyncio")


def _add_correlation_ids(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key, var, overwrite in _CONTEXT_FIELDS:
        value = var.get()
        if not value:
            continue
        if overwrite:
            event_dict[key] = value
        else:
            event_dict.setdefault(key, value)
    return event_dict


def generate_trace_id() -> str:
    return uuid.uuid4().hex[:12]


def bind_connection(connection_id: str, session_id: Optional[str] = None) -> None:
    """Tag the current task's log entries with a socket connection (and its session)."""
    connection_id_var.set(connection_id)
    if session_id is not None:
        session_id_var.set(session_id)


def setup_logging() -> None:
    """
    Configure structlog and route stdlib logging through it.

    uvicorn and httpx records are rendered by the same formatter, so a
    production deployment only ever sees JSON on stdout.
    """
    settings = get_settings()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_ids,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if settings.is_production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
