"""structlog setup shared by the API, the ETL and the CLI.

Every module logs through ``get_logger(__name__)`` with an event name and
keyword fields (``etl_complete``, ``feed_cache_read_failed``...). Output is
JSON lines for log shippers, or the coloured console renderer when a person
is watching. ``LOG_FORMAT=json|console`` forces one or the other.
"""

import logging
import os
import sys
from typing import Optional, TextIO

import structlog

LOG_FORMAT_ENV = "LOG_FORMAT"


def configure_logging(level: str = "INFO", json_logs: Optional[bool] = None) -> None:
    """Route structlog through the stdlib root logger at ``level``.

    ``json_logs`` overrides the format detection in ``_is_json_mode``.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    if json_logs is None:
        json_logs = _is_json_mode()
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
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


def _is_json_mode(stream: Optional[TextIO] = None) -> bool:
    """LOG_FORMAT wins; otherwise JSON unless the stream is a terminal."""
    forced = os.environ.get(LOG_FORMAT_ENV, "").strip().lower()
    if forced in ("json", "console"):
        return forced == "json"
    stream = stream or sys.stderr
    return not stream.isatty()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
