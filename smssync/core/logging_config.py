"""SMS Sync logging configuration.

``configure_logging()`` is called once at process startup by ``__main__``;
modules only ever do::

    import logging
    logger = logging.getLogger(__name__)

Environment (read at call time, explicit arguments win):
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR | CRITICAL   (default: INFO)
    LOG_FORMAT  text | json                                 (default: text)

Two filters sit on the single stderr handler:

* :class:`SyncContextFilter` stamps ``record.sync_id`` from
  :data:`SYNC_ID_CTX`.  The sync engine sets the variable per sweep and per
  manual sync, and tasks spawned inside inherit it, so all lines of one
  sweep share an id.
* :class:`SecretRedactionFilter` masks provider credentials.  Every
  provider authenticates with a key in the query string, so URLs that end
  up in exception messages would otherwise leak it.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "SYNC_ID_CTX",
    "SyncContextFilter",
    "SecretRedactionFilter",
    "new_sync_id",
    "redact",
]

#: Correlation id of the sweep or manual sync running in this async context.
#: ``"-"`` outside of any sync (startup, CLI commands, tests).
SYNC_ID_CTX: ContextVar[str] = ContextVar("sync_id", default="-")

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS = ("text", "json")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(sync_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")

# api_key=..., apikey=..., token=... in query strings and form bodies.
_SECRET_RE = re.compile(r"(?i)\b(api_?key|token|key)=([^&\s\"']+)")


def new_sync_id(prefix: str = "") -> str:
    """Return a short correlation id, e.g. ``"sw-3fa2b1c0"``."""
    suffix = uuid4().hex[:8]
    return f"{prefix}-{suffix}" if prefix else suffix


def redact(text: str) -> str:
    """Mask credential values in *text*: ``api_key=abc`` → ``api_key=***``."""
    return _SECRET_RE.sub(r"\1=***", text)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class SyncContextFilter(logging.Filter):
    """Copy :data:`SYNC_ID_CTX` onto every record as ``record.sync_id``."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.sync_id = SYNC_ID_CTX.get("-")
        return True


class SecretRedactionFilter(logging.Filter):
    """Rewrite records whose rendered message contains a credential.

    The message is rendered once; only records that actually change are
    rewritten (``msg`` replaced, ``args`` dropped).  Exception text is
    redacted by the formatters, which render it later.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class _RedactingTextFormatter(logging.Formatter):
    def formatException(self, ei: Any) -> str:  # noqa: N802
        return redact(super().formatException(ei))


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def _choose(value: str | None, env: str, default: str, allowed: tuple[str, ...]) -> str:
    raw = (value or os.environ.get(env, default)).strip()
    resolved = raw.upper() if env == "LOG_LEVEL" else raw.lower()
    if resolved not in allowed:
        raise ValueError(f"Unknown {env} {resolved!r}. Must be one of: {', '.join(allowed)}")
    return resolved


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Configure the root logger for the whole process.

    When the root logger already has handlers (pytest, an embedding
    application) and *force* is false, only the level is applied.

    Args:
        level: Level name; falls back to ``$LOG_LEVEL``, then ``"INFO"``.
        fmt: ``"text"`` or ``"json"``; falls back to ``$LOG_FORMAT``, then
            ``"text"``.
        force: Replace existing root handlers.

    Raises:
        ValueError: If *level* or *fmt* is not recognised.
    """
    resolved_level = _choose(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _choose(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(SyncContextFilter())
    handler.addFilter(SecretRedactionFilter())
    handler.setFormatter(
        JsonFormatter() if resolved_fmt == "json" else _RedactingTextFormatter(_TEXT_FORMAT, _DATE_FORMAT)
    )
    root.handlers[:] = [handler]

    quiet = logging.NOTSET if resolved_level == "DEBUG" else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else came in through ``extra=``.
_STANDARD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per record.

    Example line::

        {"ts": "2026-02-28T12:34:56.789Z", "level": "INFO",
         "logger": "smssync.orchestrator.sync", "sync_id": "sw-3fa2b1c0",
         "event": "SYNC_OK", "message": "Rental 3fa2... synced: 2 fetched, 2 new.",
         "extra": {}}

    ``sync_id`` is always present (``"-"`` when unset); ``event`` only when
    the call passed one.  ``exc_info`` and ``stack_info`` appear when set.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")[:-6] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "sync_id": extra.pop("sync_id", "-"),
        }
        if "event" in extra:
            payload["event"] = extra.pop("event")
        payload["message"] = record.getMessage()
        payload["extra"] = extra

        if record.exc_info:
            payload["exc_info"] = redact(self.formatException(record.exc_info))
        elif record.exc_text:
            payload["exc_info"] = redact(record.exc_text)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(payload, default=str)
