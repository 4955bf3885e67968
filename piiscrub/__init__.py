"""
piiscrub: PII redaction for error-telemetry events and queue messages,
plus a debounced pruner for expired auth tokens.
"""

from .constants import APP_VERSION

__version__ = APP_VERSION
