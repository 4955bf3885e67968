"""
Shared types for PII filtering.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

# A payload that may hold PII: a mapping, a list, a string, or nothing.
PiiData = Optional[Union[Dict[str, Any], List[Any], str]]


class CheckScope(str, Enum):
    """What a pattern filter inspects on a mapping."""

    KEYS = "keys"
    VALUES = "values"
    BOTH = "both"

    @property
    def checks_keys(self) -> bool:
        return self in (CheckScope.KEYS, CheckScope.BOTH)

    @property
    def checks_values(self) -> bool:
        return self in (CheckScope.VALUES, CheckScope.BOTH)


class FilterAction(Protocol):
    """A single redaction rule applied to one node of a payload."""

    name: str

    def execute(self, val: Any, depth: int = 1) -> Any:
        ...


class ErrorLogger(Protocol):
    """Anything with an ``error`` method, e.g. a ``logging.Logger``.

    A plain ``error(label, err)`` callable is accepted too.
    """

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        ...
