"""
Debounced, interval-gated pruning of expired tokens.

``TokenPruner.prune`` is fire-and-forget: it hands the store call to a
daemon thread, never raises, and drops calls made while a previous prune is
in flight or cooling down.  The state machine cycles::

    open ──prune()──▶ active ──store call returns──▶ pending
      ▲                                                 │
      └────────── prune_interval timer / stop() ◀───────┘

The backing store re-checks the interval itself, which guards against
several processes pruning at once.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from ..constants import (
    METRIC_PRUNE_COMPLETE,
    METRIC_PRUNE_DURATION,
    METRIC_PRUNE_ERROR,
    METRIC_PRUNE_START,
)

_logger = logging.getLogger(__name__)


class PruneStore(Protocol):
    def prune(
        self, cur_time: int, max_token_age: int, max_code_age: int, prune_interval: int
    ) -> bool:
        ...


class PruneState(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    PENDING = "pending"


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenPruner:
    """Manages pruning of stale tokens.

    Args:
        prune_interval: Minimum time between prune attempts, in milliseconds.
        store: Backing store exposing ``prune(cur_time, max_token_age,
            max_code_age, prune_interval)``.
        metrics: Optional sink with ``increment(name)``; if it also has
            ``observe(name, value)`` the pass duration is recorded.
        logger: Optional logger; failures are reported with ``error``.
        clock: Returns the current UTC time in milliseconds.
    """

    def __init__(
        self,
        prune_interval: int,
        store: PruneStore,
        metrics: Any = None,
        logger: Any = None,
        *,
        clock: Callable[[], int] = _now_ms,
    ):
        self.prune_interval = prune_interval
        self._store = store
        self._metrics = metrics
        self._logger = logger if logger is not None else _logger
        self._clock = clock
        self._state = PruneState.OPEN
        self._timer: Optional[threading.Timer] = None
        self._worker: Optional[threading.Thread] = None
        # Bumped on every new prune and on stop(); stale timers and
        # stale completions compare against it and do nothing.
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> PruneState:
        return self._state

    @property
    def current_timer(self) -> Optional[threading.Timer]:
        return self._timer

    def prune(self, max_token_age: int, max_code_age: int) -> None:
        """Attempt to prune expired tokens and codes.

        Returns at once; the store call runs on a daemon worker thread.  No
        more than one attempt runs per ``prune_interval``; extra calls are
        ignored.  Passing 0 for an age disables that half of pruning, and
        0 for both makes the call a no-op.
        """
        if max_token_age <= 0 and max_code_age <= 0:
            return

        with self._lock:
            if self._state is not PruneState.OPEN:
                return
            self._state = PruneState.ACTIVE
            self._generation += 1
            generation = self._generation
            # Daemon so a long interval never holds up interpreter shutdown
            timer = threading.Timer(self.prune_interval / 1000.0, self._reopen, args=(generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()
            worker = threading.Thread(
                target=self._run,
                args=(generation, max_token_age, max_code_age),
                daemon=True,
                name="token-pruner",
            )
            self._worker = worker
            worker.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the latest prune pass finishes; ``False`` on timeout."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def _run(self, generation: int, max_token_age: int, max_code_age: int) -> None:
        self._increment(METRIC_PRUNE_START)
        started = time.monotonic()
        try:
            ran = self._store.prune(self._clock(), max_token_age, max_code_age, self.prune_interval)
            self._logger.debug(
                "TokenPruner: prune pass %s", "ran" if ran else "skipped by store",
                extra={"duration_ms": round((time.monotonic() - started) * 1000, 1)},
            )
        except Exception as exc:
            self._increment(METRIC_PRUNE_ERROR)
            self._logger.error(
                "TokenPruner: prune failed: %s",
                exc,
                extra={
                    "error_type": type(exc).__name__,
                    "max_token_age": max_token_age,
                    "max_code_age": max_code_age,
                    "prune_interval": self.prune_interval,
                },
            )
        finally:
            with self._lock:
                if generation == self._generation and self._state is PruneState.ACTIVE:
                    self._state = PruneState.PENDING
            self._increment(METRIC_PRUNE_COMPLETE)
            self._observe(METRIC_PRUNE_DURATION, (time.monotonic() - started) * 1000)

    def stop(self) -> None:
        """Cancel any pending reset timer and reopen immediately."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._state = PruneState.OPEN

    def _reopen(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._state = PruneState.OPEN

    def _increment(self, name: str) -> None:
        if self._metrics is None:
            return
        try:
            self._metrics.increment(name)
        except Exception as exc:
            self._logger.warning("TokenPruner: metrics sink failed: %s", exc)

    def _observe(self, name: str, value: float) -> None:
        observe = getattr(self._metrics, "observe", None)
        if observe is None:
            return
        try:
            observe(name, value)
        except Exception as exc:
            self._logger.warning("TokenPruner: metrics sink failed: %s", exc)
