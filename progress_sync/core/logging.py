"""Logging setup for the progress-sync service.

Two output shapes, picked by ``LOG_JSON``:

  text  one line per record, meant for a developer terminal or
        ``docker logs``.  Records at WARNING and above carry the
        source location so the guard clause that fired is easy to find.

  json  one JSON object per line for log shippers.  Request context
        attached by the middleware (request id, path, caller) and the
        ingestion fields (batch size, org) become top-level keys, so a
        query like ``event_class="progress" AND org_id="acme"`` works
        without regexes.

Everything goes to stdout; the container runtime owns rotation.
"""

from __future__ import annotations

import json
import logging
import sys

_NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "httpcore",
    "httpx",
    "sqlalchemy.engine",
)


class _ContainerFormatter(logging.Formatter):
    """Human-readable single-line formatter with millisecond timestamps."""

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = super().formatTime(record, datefmt)
        # datefmt ends in a five-char UTC offset; splice millis in front of it
        return f"{stamp[:-5]}.{int(record.msecs):03d}{stamp[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        fmt = self._BASE_FMT
        if record.levelno >= logging.WARNING:
            fmt += self._LOC_SUFFIX
        self._style._fmt = fmt
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter; lifts known ``extra=`` fields to top-level keys."""

    _CONTEXT_FIELDS = (
        "request_id",
        "method",
        "path",
        "user_id",
        "org_id",
        "status_code",
        "duration_ms",
        "event_class",
        "batch_size",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Install a single stdout handler on the root logger.

    Unknown level names fall back to INFO.  Chatty libraries (uvicorn,
    httpx, SQLAlchemy's engine echo) are held at WARNING unless the
    service itself runs quieter than that.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
