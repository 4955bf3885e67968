"""
Structured JSON logging with context enrichment and PII scrubbing.

Every JSON line carries ``timestamp``, ``level``, ``logger``, ``message``,
``service`` and ``version``, the current thread's log context, and any of
:data:`PROMOTED_FIELDS` passed through ``extra``.

Handlers built by :func:`setup_structured_logger` carry a
:class:`PiiLogFilter`, so a message that interpolates an email address or a
token is scrubbed before it reaches a file or the console.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from ..constants import APP_VERSION, DEFAULT_LOG_DIR, LOG_BACKUP_COUNT, LOG_MAX_BYTES
from ..filters.actions import CommonPiiActions
from ..filters.base import FilterBase

_context = threading.local()

SERVICE_NAME: str = os.environ.get("LOG_SERVICE_NAME", "piiscrub")

# ``extra`` keys copied to the top level of each JSON line.
PROMOTED_FIELDS = (
    "request_id",
    "action",
    "depth",
    "error_type",
    "fingerprint",
    "state",
    "prune_interval",
    "max_token_age",
    "max_code_age",
    "duration_ms",
)


def set_log_context(**kwargs: Any) -> None:
    """Attach key-value pairs to the current thread's log context."""
    data = getattr(_context, "data", None)
    if data is None:
        data = _context.data = {}
    data.update(kwargs)


def clear_log_context() -> None:
    _context.data = {}


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the current thread's context."""
    return dict(getattr(_context, "data", None) or {})


# ── Scrubbing ────────────────────────────────────────────────────


class _TextScrubber(FilterBase):
    def filter(self, text: str) -> str:
        return self.apply_filters(text)


class PiiLogFilter(logging.Filter):
    """Scrub the rendered message of every record that passes through.

    The record's ``msg`` is replaced with the scrubbed, already-formatted
    message and ``args`` is cleared.  Failures inside an action go to the
    ``piiscrub.filters`` logger, never back into the handler being filtered.
    """

    def __init__(self, actions: Optional[Iterable[Any]] = None):
        super().__init__()
        if actions is None:
            actions = (
                CommonPiiActions.url_username_password,
                CommonPiiActions.email_values,
                CommonPiiActions.token_values,
                CommonPiiActions.ipv4_values,
            )
        self._scrubber = _TextScrubber(actions, logging.getLogger("piiscrub.filters"))

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "_pii_scrubbed", False):
            return True
        try:
            message = record.getMessage()
        except Exception:
            # Let the formatter surface the bad format string as usual
            return True
        record.msg = self._scrubber.filter(message)
        record.args = None
        record._pii_scrubbed = True
        return True


# ── Formatters ───────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "version": APP_VERSION,
            "thread": record.threadName,
        }
        if record.levelno >= logging.ERROR:
            entry["func"] = record.funcName
            entry["line"] = record.lineno

        entry.update(get_log_context())
        entry.update(
            (key, getattr(record, key))
            for key in PROMOTED_FIELDS
            if getattr(record, key, None) is not None
        )

        if record.exc_info and record.exc_info[0] is not None:
            entry["error_type"] = record.exc_info[0].__name__
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class _DevFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    _COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    _RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        action = getattr(record, "action", None)
        line = "{color}{ts} {level:<8}{reset} {name} {prefix}{msg}".format(
            color=self._COLORS.get(record.levelname, ""),
            ts=ts,
            level=record.levelname,
            reset=self._RESET,
            name=record.name,
            prefix=f"[{action}] " if action else "",
            msg=record.getMessage(),
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ── Logger factory ───────────────────────────────────────────────


def setup_structured_logger(
    name: str,
    log_file: Optional[str] = None,
    *,
    level: Optional[int] = None,
    debug: bool = False,
    log_dir: Union[str, Path, None] = None,
) -> logging.Logger:
    """Create (or retrieve) a structured, PII-scrubbing logger.

    Args:
        name: Logger name.
        log_file: File name under *log_dir* for a rotating JSON log.
            ``None`` logs to the console only.
        level: Explicit level (overrides *debug*).
        debug: If ``True``, sets level to ``DEBUG``.
        log_dir: Directory for *log_file*; defaults to ``PIISCRUB_LOG_DIR``.

    Returns:
        A configured ``logging.Logger``.  Calling again with the same name
        only updates the level.
    """
    if level is None:
        level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    handlers = []
    if log_file:
        path = Path(log_dir or DEFAULT_LOG_DIR) / log_file
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
        file_handler.setFormatter(_JsonFormatter())
        handlers.append(file_handler)

    console = logging.StreamHandler(sys.stderr)
    as_json = os.environ.get("LOG_FORMAT", "").lower() == "json"
    console.setFormatter(_JsonFormatter() if as_json else _DevFormatter())
    handlers.append(console)

    scrub = PiiLogFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(scrub)
        logger.addHandler(handler)
    return logger
