"""Structured JSON log formatter and logging configuration.

:class:`JsonFormatter` emits one JSON object per log record on a
single line (JSON Lines / NDJSON).  Each line carries the ``service``
name and application ``version`` so log aggregators can filter without
extra configuration.

When a *time source* is supplied — typically a
:class:`~smoothclock.SyncCoordinator` — each line additionally carries
``synced_timestamp``: the record's moment on the synchronized clock.
``timestamp`` stays the host's own reading, so both are available when
investigating host clock skew.  Records emitted before the first
successful sync simply omit the field.

Python's ``json.dumps`` is in the stdlib, so the formatter adds no
dependency.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Protocol

from smoothclock._errors import NotSynchronizedError
from smoothclock._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SyncedTimeSource(Protocol):
    """Anything that can report synchronized time (e.g. SyncCoordinator)."""

    def is_synchronized(self) -> bool: ...

    def timestamp(self) -> str: ...


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Each record produces a JSON object with these fields:

    - ``timestamp`` — host time, ISO 8601 UTC
    - ``level`` — Python log level name
    - ``logger`` — dotted logger name
    - ``message`` — the formatted log message
    - ``service`` — application name for log correlation
    - ``version`` — application version (omitted when empty)
    - ``synced_timestamp`` — synchronized time (only when a synchronized
      time source is configured)
    - ``exception`` — formatted traceback (only present when
      an exception is logged)
    - ``stack_info`` — stack trace (only present when
      ``stack_info=True``)

    Args:
        service: Application name included in every log line.
        version: Application version string.  Omitted from
            output when empty.
        time_source: Optional synchronized clock.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
        time_source: SyncedTimeSource | None = None,
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version
        self._time_source = time_source

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string.

        Tracebacks are escaped by ``json.dumps``, so each call
        produces exactly one line.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        synced = self._synced_timestamp()
        if synced is not None:
            entry["synced_timestamp"] = synced

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)

    def _synced_timestamp(self) -> str | None:
        source = self._time_source
        if source is None or not source.is_synchronized():
            return None
        try:
            return source.timestamp()
        except NotSynchronizedError:
            return None


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
    time_source: SyncedTimeSource | None = None,
) -> None:
    """Configure the root logger from settings.

    Clears any existing handlers on the root logger, then
    installs fresh handlers according to *settings*.

    A :class:`logging.StreamHandler` writing to ``stderr`` is
    always installed.  When ``settings.file`` is set, a
    :class:`~logging.handlers.RotatingFileHandler` is added as
    well (``settings.max_file_size_mb`` per file,
    ``settings.backup_count`` generations).

    Args:
        settings: Logging configuration (level, format, file).
        service: Application name passed to :class:`JsonFormatter`.
        version: Application version passed to :class:`JsonFormatter`.
        time_source: Synchronized clock for ``synced_timestamp``
            (JSON format only).
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(
            service=service,
            version=version,
            time_source=time_source,
        )
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MEGABYTE,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
