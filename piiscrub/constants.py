"""
Centralised constants for the piiscrub package.

Redaction markers, default depth budgets, log rotation settings and metric
names live here so they can be imported by any module without circular
dependencies.
"""

import os
from pathlib import Path

# ── Version ──────────────────────────────────────────────────────
APP_VERSION = "0.4.0"

# ── Redaction markers ────────────────────────────────────────────
FILTERED = "[Filtered]"
TRUNCATED = "[Truncated]"

# ── Depth budgets ────────────────────────────────────────────────
DEFAULT_MAX_DEPTH = 3
EVENT_MAX_DEPTH = 5
# Hard stop for the walker, independent of any DepthFilter in the pipeline
MAX_WALK_DEPTH = 10

# ── Paths / config ───────────────────────────────────────────────
DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_LOG_DIR = Path(os.environ.get("PIISCRUB_LOG_DIR", "logs"))
DEFAULT_DB_PATH = "data/tokens.db"

# ── Logging ──────────────────────────────────────────────────────
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# ── Token pruning ────────────────────────────────────────────────
DEFAULT_PRUNE_INTERVAL_MS = 60 * 60 * 1000  # 1 hour
DEFAULT_MAX_TOKEN_AGE_MS = 0  # disabled
DEFAULT_MAX_CODE_AGE_MS = 0  # disabled
PRUNE_BATCH_LIMIT = 10000
PRUNE_LOCK_TIMEOUT_SECONDS = 3.0

METRIC_PRUNE_START = "prune_tokens.start"
METRIC_PRUNE_ERROR = "prune_tokens.error"
METRIC_PRUNE_COMPLETE = "prune_tokens.complete"
METRIC_PRUNE_DURATION = "prune_tokens.duration_ms"

# ── Error tracking ───────────────────────────────────────────────
MAX_ERROR_BUFFER = 200
DEFAULT_TRACES_SAMPLE_RATE = 0.1
