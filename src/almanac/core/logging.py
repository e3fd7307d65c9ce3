"""Structured logging for almanac.

Every module logs through ``logging.getLogger(__name__)``; the root handlers
render those records with structlog's ``ProcessorFormatter``.  The console
gets ``text`` (coloured, for development) or ``json`` lines, and an optional
log file always gets JSON lines.  Records carry the acting user id and, while
an OpenTelemetry span is active, its trace and span ids.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

_acting_user: ContextVar[str | None] = ContextVar("almanac_user_id", default=None)

# Per-request chatter from these libraries stays at WARNING and above.
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai")


def set_user_context(user_id: str | None) -> None:
    """Attach *user_id* to every record logged from the current task."""
    _acting_user.set(user_id)


def add_request_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict.setdefault("user_id", _acting_user.get())
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _formatter(renderer: Any, *, timestamp: str) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=timestamp),
            add_request_context,
            structlog.stdlib.ExtraAdder(),
        ],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | str | None = None,
) -> None:
    """Install almanac's root handlers, replacing any existing ones.

    *fmt* selects the console renderer (``"text"`` or ``"json"``).  When
    *log_file* is given, its parent directories are created and JSON lines
    are appended to it at DEBUG level.
    """
    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), timestamp="iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(), timestamp="%H:%M:%S")

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console)
    root.addHandler(console_handler)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), timestamp="iso"))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
