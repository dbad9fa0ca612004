"""
Logging setup for the canvas services.

Two output formats are available from the command line:

- ``json``: one object per line for Log Analytics and similar indexers.
  The ``extra`` fields (user_id, continuation, page_size, ...) become
  top-level keys.
- ``text``: a compact line for a terminal, with the same extras appended
  as ``key=value`` pairs.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TextIO

LOG_FORMATS = ("json", "text")

# Every attribute a bare LogRecord carries; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# The Azure SDK logs every HTTP round trip at INFO
_CHATTY_LOGGERS = ("azure", "azure.identity", "aiohttp.access")


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields attached to ``record`` by ``extra=`` or a logger adapter."""
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    Single-line JSON records.

    Fixed keys are ``timestamp`` (record creation time, UTC), ``level``,
    ``logger`` and ``message``; ``exception`` is present when the record
    carries a traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update((key, _plain(value)) for key, value in record_extras(record).items())
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class ConsoleFormatter(logging.Formatter):
    """``12:00:01 INFO    reader: Polled 3 entries page_size=50``"""

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.removeprefix("shared_canvas.")
        line = f"{self.formatTime(record, '%H:%M:%S')} {record.levelname:<7} {component}: {record.getMessage()}"
        extras = record_extras(record)
        if extras:
            line += " " + " ".join(f"{key}={_plain(value)}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: int = logging.INFO,
    fmt: str = "json",
    logger_name: str = "shared_canvas",
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Attach a single stdout handler to the package logger.

    Calling this again replaces the handler, so ``main`` can run more than
    once in a process (tests do) without duplicating output.
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {fmt!r}; expected one of {LOG_FORMATS}")

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter() if fmt == "json" else ConsoleFormatter())

    logger = logging.getLogger(logger_name)
    logger.handlers[:] = [handler]
    logger.setLevel(level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logger


def get_canvas_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"shared_canvas.{component}")


class CanvasLoggerAdapter(logging.LoggerAdapter):
    """
    Binds request context (invocation_id, path, user_id) to every record.

    Fields passed with ``extra=`` at the call site take precedence over the
    bound ones, and ``None`` values are left out.
    """

    def process(self, msg: Any, kwargs: dict[str, Any]) -> tuple[Any, dict[str, Any]]:
        merged = {**self.extra, **kwargs.get("extra", {})}
        kwargs["extra"] = {key: value for key, value in merged.items() if value is not None}
        return msg, kwargs
