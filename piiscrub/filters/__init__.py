"""
PII filtering: redaction actions, the recursive pipeline, and the
event / queue-message filters built on it.
"""

from .actions import (
    CommonPiiActions,
    DepthFilter,
    EmailFilter,
    PiiFilter,
    PiiRegexFilter,
    UrlUsernamePasswordFilter,
)
from .base import FilterBase
from .events import (
    SentryPiiFilter,
    SqsMessageFilter,
    default_event_filter,
    default_queue_filter,
    filter_sentry_event,
)
from .models import CheckScope, PiiData

__all__ = [
    "CheckScope",
    "CommonPiiActions",
    "DepthFilter",
    "EmailFilter",
    "FilterBase",
    "PiiData",
    "PiiFilter",
    "PiiRegexFilter",
    "SentryPiiFilter",
    "SqsMessageFilter",
    "UrlUsernamePasswordFilter",
    "default_event_filter",
    "default_queue_filter",
    "filter_sentry_event",
]
