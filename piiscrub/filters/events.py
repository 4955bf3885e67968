"""
Concrete filters for error-telemetry events and queue messages.

``SentryPiiFilter`` walks the PII-bearing fields of a Sentry event, each
with its own depth budget starting at 1.  Fields it does not know about
(``type``, ``spans``, ``measurements``, ``debug_meta``, ``tags``, ...) are
passed through untouched, and absent fields are never created.

``SqsMessageFilter`` scrubs only the ``Body`` of a queue message.
"""

from typing import Any, Dict, Iterable, Optional, Tuple

from ..constants import EVENT_MAX_DEPTH
from .actions import CommonPiiActions, DepthFilter
from .base import FilterBase
from .models import ErrorLogger, FilterAction

__all__ = [
    "EVENT_FIELDS",
    "SentryPiiFilter",
    "SqsMessageFilter",
    "default_event_filter",
    "default_queue_filter",
    "filter_sentry_event",
]

# Top-level event fields that are walked.  Each one restarts the depth
# budget at 1, so ``extra`` and ``user`` are limited independently.
EVENT_FIELDS: Tuple[str, ...] = (
    "message",
    "breadcrumbs",
    "request",
    "exception",
    "extra",
    "user",
    "contexts",
)


class SentryPiiFilter(FilterBase):
    """Scrub PII from a Sentry event dict.

    Usable directly as a ``before_send`` hook through
    :meth:`before_send`.
    """

    def __init__(
        self,
        actions: Iterable[FilterAction],
        logger: Optional[ErrorLogger] = None,
        *,
        fields: Iterable[str] = EVENT_FIELDS,
    ):
        super().__init__(actions, logger)
        self.fields = tuple(fields)

    def filter(self, event: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not event:
            return event
        for field in self.fields:
            if event.get(field) is None:
                continue
            event[field] = self.apply_filters(event[field], 1)
        return event

    def before_send(self, event: Dict[str, Any], hint: Any = None) -> Optional[Dict[str, Any]]:
        return self.filter(event)


class SqsMessageFilter(FilterBase):
    """Scrub the ``Body`` of a queue message; other attributes pass through."""

    def filter(self, message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not message:
            return message
        body = message.get("Body")
        if isinstance(body, str):
            message["Body"] = self.apply_filters(body, 1)
        return message


def default_event_filter(
    logger: Optional[ErrorLogger] = None, *, max_depth: int = EVENT_MAX_DEPTH
) -> SentryPiiFilter:
    """The standard event pipeline: depth limit first, then every PII matcher.

    URL credentials are stripped before emails so that ``user:pw@host`` is
    not read as an address.
    """
    depth_filter = (
        CommonPiiActions.depth_filter if max_depth == EVENT_MAX_DEPTH else DepthFilter(max_depth)
    )
    return SentryPiiFilter(
        [
            depth_filter,
            CommonPiiActions.url_username_password,
            CommonPiiActions.pii_keys,
            CommonPiiActions.email_values,
            CommonPiiActions.token_values,
            CommonPiiActions.ipv4_values,
            CommonPiiActions.ipv6_values,
        ],
        logger,
    )


def default_queue_filter(logger: Optional[ErrorLogger] = None) -> SqsMessageFilter:
    return SqsMessageFilter(
        [
            CommonPiiActions.email_values,
            CommonPiiActions.token_values,
        ],
        logger,
    )


_event_filter = default_event_filter()


def filter_sentry_event(event: Dict[str, Any], hint: Any = None) -> Optional[Dict[str, Any]]:
    """``before_send`` callback for ``sentry_sdk.init`` using the default pipeline."""
    return _event_filter.filter(event)
