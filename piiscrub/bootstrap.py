"""
Wire configuration into ready-to-use components.

Typical process start-up::

    cfg = load_config("config.json")
    tracker = build_error_tracker(cfg)
    pruner = build_token_pruner(cfg)
    ...
    pruner.prune(cfg["pruner"]["max_token_age_ms"], cfg["pruner"]["max_code_age_ms"])
"""

from typing import Any, Dict, Optional

from .config import ConfigError, validate_config
from .observability.errors import ErrorTracker
from .observability.logging import setup_structured_logger
from .observability.metrics import MetricsCollector
from .repositories.token_repo import TokenStore
from .workers.token_pruner import TokenPruner


def _checked(config: Dict[str, Any]) -> Dict[str, Any]:
    errors = validate_config(config)
    if errors:
        raise ConfigError("; ".join(errors))
    return config


def build_error_tracker(config: Dict[str, Any]) -> ErrorTracker:
    """Create the process-wide ``ErrorTracker`` from the ``sentry`` / ``filters`` sections."""
    cfg = _checked(config)
    sentry = cfg["sentry"]
    return ErrorTracker(
        sentry.get("dsn") or "",
        environment=sentry.get("environment") or None,
        traces_sample_rate=float(sentry["traces_sample_rate"]),
        max_depth=cfg["filters"]["max_depth"],
    )


def build_token_pruner(
    config: Dict[str, Any],
    *,
    store: Optional[TokenStore] = None,
    metrics: Any = None,
    logger: Any = None,
) -> TokenPruner:
    """Create a ``TokenPruner`` over the configured SQLite token store."""
    cfg = _checked(config)["pruner"]
    return TokenPruner(
        cfg["interval_ms"],
        store if store is not None else TokenStore(cfg["db_path"]),
        metrics if metrics is not None else MetricsCollector(),
        logger if logger is not None else setup_structured_logger("piiscrub.pruner", "pruner.log"),
    )
