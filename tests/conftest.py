"""
Test fixtures and configuration for pytest
"""

import os
import tempfile

# Log files go to a scratch directory; must be set before piiscrub is imported.
os.environ.setdefault("PIISCRUB_LOG_DIR", tempfile.mkdtemp(prefix="piiscrub-logs-"))

import pytest  # noqa: E402

from piiscrub.config import default_config  # noqa: E402
from piiscrub.observability.errors import ErrorTracker  # noqa: E402
from piiscrub.observability.logging import clear_log_context  # noqa: E402
from piiscrub.observability.metrics import MetricsCollector  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """Fresh tracker / metrics / log context for every test, and no ambient DSN."""
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    ErrorTracker.reset()
    MetricsCollector.reset()
    clear_log_context()
    yield
    ErrorTracker.reset()
    MetricsCollector.reset()
    clear_log_context()


@pytest.fixture
def test_config(tmp_path):
    """Provide a valid configuration rooted in a temp directory"""
    cfg = default_config()
    cfg["pruner"]["db_path"] = str(tmp_path / "tokens.db")
    cfg["pruner"]["interval_ms"] = 60_000
    cfg["pruner"]["max_token_age_ms"] = 5_000
    cfg["pruner"]["max_code_age_ms"] = 5_000
    return cfg


@pytest.fixture
def token_store(tmp_path):
    from piiscrub.repositories.token_repo import TokenStore

    store = TokenStore(tmp_path / "tokens.db", lock_timeout=0.1)
    yield store
    store.close()
