"""
Centralised error reporting with PII scrubbing.

Captures exceptions from request handlers, queue consumers and background
workers, scrubs them, and forwards them to Sentry.  Every event leaving
the process goes through the PII event filter twice over: explicitly for
the context attached here, and as Sentry's ``before_send`` hook for
anything the SDK adds on its own.

Captured errors are also:
1. Logged via the structured logger.
2. Stored (scrubbed) in a bounded in-memory ring buffer for dashboards.
"""

import os
import sys
import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sentry_sdk
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from ..constants import DEFAULT_TRACES_SAMPLE_RATE, EVENT_MAX_DEPTH, MAX_ERROR_BUFFER
from ..filters.events import default_event_filter, default_queue_filter
from .logging import get_log_context, setup_structured_logger

# ── Records ──────────────────────────────────────────────────────


@dataclass
class ErrorRecord:
    """A single captured, already-scrubbed error."""

    timestamp: str
    error_type: str
    message: str
    traceback: str
    context: Dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "error_type": self.error_type,
            "message": self.message,
            "traceback": self.traceback,
            "context": self.context,
            "fingerprint": self.fingerprint,
        }


@dataclass
class ExtraContext:
    """A named block of data attached to a reported exception."""

    name: str
    field_data: Dict[str, Any]


# ── Error Tracker ────────────────────────────────────────────────


class ErrorTracker:
    """Singleton that scrubs, records and forwards errors.

    Usage::

        tracker = ErrorTracker(dsn=cfg["sentry"]["dsn"])
        tracker.install_flask(app)

        # In a queue consumer:
        try:
            handle(message)
        except Exception as exc:
            tracker.capture_queue_error(exc, message)
    """

    _instance: Optional["ErrorTracker"] = None
    _lock = threading.Lock()

    def __new__(cls, *args: Any, **kwargs: Any) -> "ErrorTracker":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        environment: Optional[str] = None,
        traces_sample_rate: float = DEFAULT_TRACES_SAMPLE_RATE,
        max_depth: int = EVENT_MAX_DEPTH,
        logger: Any = None,
    ) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._buffer: deque = deque(maxlen=MAX_ERROR_BUFFER)
        self._counts: Dict[str, int] = {}
        self._logger = logger or setup_structured_logger("piiscrub.errors", "errors.log")
        self.event_filter = default_event_filter(self._logger, max_depth=max_depth)
        self.queue_filter = default_queue_filter(self._logger)

        self._sentry_dsn = dsn if dsn is not None else os.environ.get("SENTRY_DSN", "")
        if self._sentry_dsn:
            sentry_sdk.init(
                dsn=self._sentry_dsn,
                environment=environment,
                traces_sample_rate=traces_sample_rate,
                before_send=self.event_filter.before_send,
            )
            self._logger.info("Sentry SDK initialised")

    # ── Capture methods ──────────────────────────────────────────

    def capture_exception(
        self,
        exc: Optional[BaseException] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorRecord]:
        """Capture an exception with scrubbed context.

        Args:
            exc: The exception. If ``None``, uses ``sys.exc_info()``.
            extra: Additional context to attach; scrubbed before use.

        Returns:
            The ``ErrorRecord``, or ``None`` if nothing to capture.
        """
        if exc is None:
            exc = sys.exc_info()[1]
            if exc is None:
                return None

        ctx = get_log_context()
        if extra:
            ctx.update(extra)
        ctx = self._scrub_extra(ctx)

        record = self._record(exc, ctx)
        self._forward(exc, extras=ctx)
        return record

    def capture_queue_error(
        self, exc: BaseException, message: Optional[Dict[str, Any]] = None
    ) -> ErrorRecord:
        """Capture a queue-consumer error, attaching the scrubbed message."""
        contexts: List[ExtraContext] = []
        if message and message.get("Body"):
            message = self.queue_filter.filter(message)
            contexts.append(ExtraContext("SQS Message", dict(message)))

        record = self._record(exc, {"queue_message": bool(contexts)})
        self._forward(exc, contexts=contexts)
        return record

    def report_request_exception(
        self,
        exc: BaseException,
        contexts: Iterable[ExtraContext] = (),
        request: Any = None,
    ) -> Optional[ErrorRecord]:
        """Report an exception raised while serving *request*.

        Exceptions already marked ``reported`` are skipped, so nested
        handlers can call this freely.
        """
        if getattr(exc, "reported", False):
            return None

        event: Dict[str, Any] = {"contexts": {c.name: c.field_data for c in contexts}}
        if request is not None:
            event["request"] = _request_info(request)
        event = self.event_filter.filter(event)
        request_info = event.get("request")

        ctx: Dict[str, Any] = {}
        if request_info:
            ctx = {"method": request_info["method"], "url": request_info["url"]}
        record = self._record(exc, ctx)
        self._forward(
            exc,
            contexts=[ExtraContext(k, v) for k, v in event["contexts"].items()],
            request_info=request_info,
        )

        try:
            exc.reported = True  # type: ignore[attr-defined]
        except AttributeError:
            pass
        return record

    # ── Flask integration ────────────────────────────────────────

    def install_flask(self, app: Flask) -> None:
        """Register an error handler that reports unhandled exceptions."""

        @app.errorhandler(Exception)
        def _handle_exception(exc: Exception):
            if isinstance(exc, HTTPException):
                return exc

            self.report_request_exception(
                exc,
                [ExtraContext("endpoint", {"endpoint": request.endpoint or ""})],
                request,
            )
            return jsonify({"error": "Internal Server Error"}), 500

    # ── Query methods ────────────────────────────────────────────

    def recent_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the most recent errors as dicts, newest first."""
        items = list(self._buffer)[-limit:]
        items.reverse()
        return [e.to_dict() for e in items]

    def error_summary(self) -> Dict[str, Any]:
        """Return dedup counts and totals."""
        return {
            "total_captured": sum(self._counts.values()),
            "unique_errors": len(self._counts),
            "top_errors": sorted(
                [{"fingerprint": fp, "count": c} for fp, c in self._counts.items()],
                key=lambda x: x["count"],
                reverse=True,
            )[:20],
        }

    # ── Internals ────────────────────────────────────────────────

    def _scrub_extra(self, extra: Dict[str, Any]) -> Dict[str, Any]:
        event = self.event_filter.filter({"extra": extra})
        return event["extra"]

    def _scrub_text(self, text: str) -> str:
        event = self.event_filter.filter({"message": text})
        return event["message"]

    def _record(self, exc: BaseException, ctx: Dict[str, Any]) -> ErrorRecord:
        exc_info = (type(exc), exc, exc.__traceback__)
        tb = "".join(traceback.format_exception(*exc_info))
        fingerprint = f"{type(exc).__name__}:{_extract_location(exc_info)}"

        record = ErrorRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            error_type=type(exc).__name__,
            message=self._scrub_text(str(exc)),
            traceback=self._scrub_text(tb),
            context=ctx,
            fingerprint=fingerprint,
        )
        self._buffer.append(record)
        self._counts[fingerprint] = self._counts.get(fingerprint, 0) + 1

        self._logger.error(
            "Captured %s: %s",
            record.error_type,
            record.message,
            extra={"error_type": record.error_type, "fingerprint": fingerprint},
        )
        return record

    def _forward(
        self,
        exc: BaseException,
        *,
        extras: Optional[Mapping[str, Any]] = None,
        contexts: Iterable[ExtraContext] = (),
        request_info: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send *exc* to Sentry; a no-op when the SDK is not initialised."""
        try:
            with sentry_sdk.new_scope() as scope:
                if request_info is not None:
                    scope.add_event_processor(_request_processor(request_info))
                for key, value in (extras or {}).items():
                    scope.set_extra(key, value)
                for ctx in contexts:
                    scope.set_context(ctx.name, ctx.field_data)
                sentry_sdk.capture_exception(exc)
        except Exception as send_exc:
            self._logger.warning("Failed to forward error to Sentry: %s", send_exc)

    # ── Reset (testing) ──────────────────────────────────────────

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._instance = None


def _request_info(request: Any) -> Dict[str, Any]:
    """Build the Sentry ``request`` interface from a Flask / werkzeug request."""
    data = request.get_json(silent=True) if request.is_json else request.form.to_dict()
    return {
        "url": request.base_url,
        "method": request.method,
        "query_string": request.args.to_dict(),
        "cookies": dict(request.cookies),
        "headers": dict(request.headers),
        "data": data or None,
    }


def _request_processor(request_info: Dict[str, Any]):
    def processor(event: Dict[str, Any], hint: Any) -> Dict[str, Any]:
        event["request"] = dict(request_info)
        event["level"] = "error"
        return event

    return processor


def _extract_location(exc_info) -> str:
    """Extract file:line from the innermost traceback frame."""
    tb = exc_info[2]
    if tb is None:
        return "unknown"
    while tb.tb_next:
        tb = tb.tb_next
    return f"{tb.tb_frame.f_code.co_filename}:{tb.tb_lineno}"
