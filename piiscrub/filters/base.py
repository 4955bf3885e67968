"""
Filter pipeline: runs an ordered list of actions over a payload tree.

``FilterBase.apply_filters`` is the recursive walker shared by every
concrete filter:

1. Every action runs on the current node, in order, each in isolation.
   An action that raises is logged and skipped; the node keeps whatever
   value it had before that action ran.
2. The walker then descends into nested mappings and lists at
   ``depth + 1`` and writes each filtered child back in place.  At the
   hard depth cap those children are replaced with ``[Truncated]``
   instead, so nothing below the cap leaves unfiltered.

Payloads are mutated in place and the (possibly replaced) root is
returned.  Self-referencing payloads are tolerated: a container already on
the current path is not entered again.
"""

import logging
from collections.abc import MutableMapping
from typing import Any, Iterable, List, Optional, Set

from ..constants import MAX_WALK_DEPTH, TRUNCATED
from .models import ErrorLogger, FilterAction

_logger = logging.getLogger(__name__)


class FilterBase:
    """Base class for top-level filters.

    Args:
        actions: Filter actions, applied in order at every node.
        logger: Receives one ``error`` call per failing action invocation.
            Defaults to this module's logger.
    """

    def __init__(self, actions: Iterable[FilterAction], logger: Optional[ErrorLogger] = None):
        self.actions: List[FilterAction] = list(actions)
        self.logger = logger if logger is not None else _logger

    def filter(self, data: Any) -> Any:
        raise NotImplementedError

    def apply_filters(self, val: Any, depth: int = 1) -> Any:
        """Filter *val* and everything nested under it, starting at *depth*."""
        return self._walk(val, depth, set())

    # ── Walker ───────────────────────────────────────────────────

    def _walk(self, val: Any, depth: int, path: Set[int]) -> Any:
        for action in self.actions:
            val = self._run_action(action, val, depth)

        if isinstance(val, MutableMapping):
            children = [(k, v) for k, v in val.items() if isinstance(v, (MutableMapping, list))]
        elif isinstance(val, list):
            children = [
                (i, v) for i, v in enumerate(val)
                if isinstance(v, (MutableMapping, list, str))
            ]
        else:
            return val

        if depth >= MAX_WALK_DEPTH:
            for key, _child in children:
                val[key] = TRUNCATED
            return val

        marker = id(val)
        if marker in path:
            return val
        path.add(marker)
        try:
            for key, child in children:
                if isinstance(child, (MutableMapping, list)) and id(child) in path:
                    continue
                val[key] = self._walk(child, depth + 1, path)
        finally:
            path.discard(marker)
        return val

    def _run_action(self, action: FilterAction, val: Any, depth: int) -> Any:
        try:
            return action.execute(val, depth)
        except Exception as exc:
            self._report_failure(action, exc, depth)
            return val

    def _report_failure(self, action: FilterAction, exc: Exception, depth: int) -> None:
        name = getattr(action, "name", type(action).__name__)
        args = ("Filter action %s failed: %s", name, exc)
        extra = {"action": name, "error_type": type(exc).__name__, "depth": depth}
        try:
            self.logger.error(*args, extra=extra)
            return
        except Exception:
            if self.logger is _logger:
                return
        # Injected loggers may only take error(label, err)
        try:
            self.logger.error(f"Filter action {name} failed", exc)
        except Exception:
            _logger.error(*args, extra=extra)
