"""
Observability package: structured logging, metrics, and scrubbed error
reporting.

Provides:
- ``setup_structured_logger``: JSON-formatted logging with thread-local context
- ``PiiLogFilter``: scrubs rendered log messages with the redaction actions
- ``MetricsCollector``: in-process counters and histograms
- ``ErrorTracker``: Sentry reporting with every event passed through the PII filter
"""

from .errors import ErrorTracker, ExtraContext
from .logging import (
    PiiLogFilter,
    clear_log_context,
    get_log_context,
    set_log_context,
    setup_structured_logger,
)
from .metrics import MetricsCollector

__all__ = [
    "setup_structured_logger",
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    "PiiLogFilter",
    "MetricsCollector",
    "ErrorTracker",
    "ExtraContext",
]
