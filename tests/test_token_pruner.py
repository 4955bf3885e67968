"""Tests for the debounced token pruner state machine."""

import threading
import time
from unittest.mock import MagicMock, call

import pytest

from piiscrub.constants import (
    METRIC_PRUNE_COMPLETE,
    METRIC_PRUNE_DURATION,
    METRIC_PRUNE_ERROR,
    METRIC_PRUNE_START,
)
from piiscrub.observability.metrics import MetricsCollector
from piiscrub.repositories.token_repo import TokenStoreError
from piiscrub.workers import PruneState, TokenPruner


class _FakeStore:
    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.calls = []
        self.delay = delay
        self.error = error

    def prune(self, cur_time, max_token_age, max_code_age, prune_interval):
        self.calls.append((cur_time, max_token_age, max_code_age, prune_interval))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return True


@pytest.fixture
def store():
    return _FakeStore()


@pytest.fixture
def metrics():
    return MagicMock()


@pytest.fixture
def make_pruner(store, metrics):
    created = []

    def _make(interval=60_000, **kwargs):
        kwargs.setdefault("store", store)
        kwargs.setdefault("metrics", metrics)
        pruner = TokenPruner(interval, kwargs.pop("store"), kwargs.pop("metrics"), **kwargs)
        created.append(pruner)
        return pruner

    yield _make
    for p in created:
        p.stop()


class TestTokenPruner:
    def test_starts_open(self, make_pruner):
        pruner = make_pruner()
        assert pruner.state is PruneState.OPEN
        assert pruner.current_timer is None

    def test_debounces_repeated_calls(self, make_pruner, store, metrics):
        pruner = make_pruner()

        pruner.prune(1000, 1000)
        pruner.prune(1000, 1000)
        pruner.prune(1000, 1000)
        assert pruner.wait(2)

        assert len(store.calls) == 1
        assert metrics.increment.call_args_list == [
            call(METRIC_PRUNE_START),
            call(METRIC_PRUNE_COMPLETE),
        ]
        assert pruner.state is PruneState.PENDING
        assert pruner.current_timer is not None

    def test_passes_clock_and_ages_to_store(self, make_pruner, store):
        pruner = make_pruner(5000, clock=lambda: 12345)
        pruner.prune(1000, 2000)
        assert pruner.wait(2)
        assert store.calls == [(12345, 1000, 2000, 5000)]

    def test_zero_ages_is_a_no_op(self, make_pruner, store, metrics):
        pruner = make_pruner()
        pruner.prune(0, 0)
        pruner.prune(-1, 0)
        assert pruner.wait(2)

        assert store.calls == []
        metrics.increment.assert_not_called()
        assert pruner.state is PruneState.OPEN
        assert pruner.current_timer is None

    def test_single_age_is_enough(self, make_pruner, store):
        pruner = make_pruner()
        pruner.prune(0, 500)
        assert pruner.wait(2)
        assert len(store.calls) == 1

    def test_stop_reopens_and_cancels_timer(self, make_pruner, store):
        pruner = make_pruner()
        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        timer = pruner.current_timer

        pruner.stop()

        assert pruner.state is PruneState.OPEN
        assert pruner.current_timer is None
        timer.join(1)
        assert not timer.is_alive()

        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        assert len(store.calls) == 2

    def test_stop_when_idle_is_harmless(self, make_pruner):
        pruner = make_pruner()
        pruner.stop()
        pruner.stop()
        assert pruner.state is PruneState.OPEN

    def test_timer_reopens_after_interval(self, make_pruner, store):
        pruner = make_pruner(50)
        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        timer = pruner.current_timer
        if timer is not None:
            timer.join(2)

        assert pruner.state is PruneState.OPEN
        assert pruner.current_timer is None

        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        assert len(store.calls) == 2

    def test_prune_returns_before_store_finishes(self, make_pruner):
        release = threading.Event()

        class _BlockingStore:
            calls = 0

            def prune(self, *args):
                _BlockingStore.calls += 1
                release.wait(5)
                return True

        pruner = make_pruner(store=_BlockingStore())
        started = time.monotonic()
        pruner.prune(1000, 1000)
        assert time.monotonic() - started < 1.0

        assert pruner.state is PruneState.ACTIVE
        pruner.prune(1000, 1000)
        assert not pruner.wait(0.05)

        release.set()
        assert pruner.wait(2)
        assert pruner.state is PruneState.PENDING
        assert _BlockingStore.calls == 1

    def test_wait_without_prune(self, make_pruner):
        assert make_pruner().wait(0)

    def test_worker_is_daemon(self, make_pruner):
        pruner = make_pruner()
        pruner.prune(1000, 1000)
        assert pruner._worker.daemon
        assert pruner.wait(2)

    def test_timer_is_daemon(self, make_pruner):
        pruner = make_pruner()
        pruner.prune(1000, 1000)
        assert pruner.current_timer.daemon

    def test_store_error_is_logged_and_swallowed(self, make_pruner, metrics):
        logger = MagicMock()
        pruner = make_pruner(store=_FakeStore(error=TokenStoreError("db down")), logger=logger)

        pruner.prune(1000, 2000)
        assert pruner.wait(2)

        logger.error.assert_called_once()
        extra = logger.error.call_args.kwargs["extra"]
        assert extra["error_type"] == "TokenStoreError"
        assert extra["max_token_age"] == 1000
        assert extra["max_code_age"] == 2000
        assert metrics.increment.call_args_list == [
            call(METRIC_PRUNE_START),
            call(METRIC_PRUNE_ERROR),
            call(METRIC_PRUNE_COMPLETE),
        ]
        assert pruner.state is PruneState.PENDING

    def test_stop_during_store_call_is_not_undone(self, make_pruner):
        holder = {}

        class _StoppingStore:
            def prune(self, *args):
                holder["pruner"].stop()
                return True

        pruner = make_pruner(store=_StoppingStore())
        holder["pruner"] = pruner
        pruner.prune(1000, 1000)
        assert pruner.wait(2)

        assert pruner.state is PruneState.OPEN

    def test_stale_timer_does_not_reopen_new_cycle(self, make_pruner):
        pruner = make_pruner()
        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        pruner.stop()
        pruner.prune(1000, 1000)
        assert pruner.wait(2)

        # An old timer firing late must not touch the current cycle
        pruner._reopen(0)
        assert pruner.state is PruneState.PENDING

    def test_metrics_sink_failure_is_tolerated(self, make_pruner, store):
        logger = MagicMock()
        broken = MagicMock()
        broken.increment.side_effect = RuntimeError("sink gone")
        pruner = make_pruner(metrics=broken, logger=logger)

        pruner.prune(1000, 1000)
        assert pruner.wait(2)

        assert len(store.calls) == 1
        assert logger.warning.call_count == 2

    def test_works_without_metrics(self, store):
        pruner = TokenPruner(60_000, store)
        try:
            pruner.prune(1000, 1000)
            assert pruner.wait(2)
            assert len(store.calls) == 1
        finally:
            pruner.stop()

    def test_reports_to_metrics_collector(self, make_pruner):
        mc = MetricsCollector()
        pruner = make_pruner(metrics=mc)
        pruner.prune(1000, 1000)
        assert pruner.wait(2)
        assert mc.counter(METRIC_PRUNE_START) == 1.0
        assert mc.counter(METRIC_PRUNE_COMPLETE) == 1.0
        assert mc.counter(METRIC_PRUNE_ERROR) == 0.0
        assert mc.snapshot()["histograms"][METRIC_PRUNE_DURATION]["count"] == 1

    def test_concurrent_calls_prune_once(self, make_pruner):
        slow = _FakeStore(delay=0.05)
        pruner = make_pruner(store=slow)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            pruner.prune(1000, 1000)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert pruner.wait(2)

        assert len(slow.calls) == 1
