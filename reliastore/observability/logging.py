"""
Structured Logging for the sync engine

Log calls take keyword fields instead of formatted strings:

    log = StructuredLogger(__name__).with_extra(store="players")
    with StructuredLogger.context(identity="42"):
        log.info("Loaded record", version=7)

With ``setup_logging(json_output=True)`` that line is emitted as one JSON
object carrying ``store``, ``identity`` and ``version`` next to the
message. Context fields live in a ``ContextVar`` so concurrent loads and
saves of different identities never see each other's fields.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


_context_fields: ContextVar[dict[str, Any]] = ContextVar("reliastore_log_fields", default={})

# Attributes every ``logging.LogRecord`` carries; anything else came in
# through ``extra`` and is emitted as a field.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: context fields, then call-site fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context_fields.get())
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger`` that turns keyword arguments into
    record fields and carries per-logger default fields.
    """

    __slots__ = ("_logger", "_fields")

    def __init__(self, name: str, fields: Optional[dict[str, Any]] = None) -> None:
        self._logger = logging.getLogger(name)
        self._fields: dict[str, Any] = dict(fields or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def with_extra(self, **fields: Any) -> StructuredLogger:
        """Child logger that adds ``fields`` to every record."""
        return StructuredLogger(self._logger.name, {**self._fields, **fields})

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields, exc_info=True)

    def _emit(self, level: int, message: str, fields: dict[str, Any], exc_info: bool = False) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, exc_info=exc_info, extra={**self._fields, **fields})

    @staticmethod
    @contextmanager
    def context(**fields: Any) -> Iterator[None]:
        """Attach ``fields`` to every record logged inside the block."""
        token = _context_fields.set({**_context_fields.get(), **fields})
        try:
            yield
        finally:
            _context_fields.reset(token)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Replace the root handlers with a single stream handler."""
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
        ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    logging.getLogger("redis").setLevel(logging.WARNING)
