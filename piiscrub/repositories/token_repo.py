"""
SQLite-backed token store with an idempotent prune procedure.

The store is the sole arbiter of whether pruning actually happens: each
call takes the database write lock (``BEGIN IMMEDIATE`` with a short busy
timeout) and re-checks ``session_tokens_last_pruned_at`` against the
prune interval, so concurrent callers from several processes cannot pile
up delete batches.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..constants import PRUNE_BATCH_LIMIT, PRUNE_LOCK_TIMEOUT_SECONDS

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS db_metadata (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS session_tokens (
        token_id TEXT PRIMARY KEY,
        uid TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_session_tokens_created ON session_tokens(created_at);

    CREATE TABLE IF NOT EXISTS unverified_tokens (
        token_id TEXT PRIMARY KEY,
        uid TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL,
        session_token_id TEXT
    );

    CREATE TABLE IF NOT EXISTS unblock_codes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL,
        code TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS signin_codes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL,
        code TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS account_reset_tokens (
        token_id TEXT PRIMARY KEY,
        uid TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS password_forgot_tokens (
        token_id TEXT PRIMARY KEY,
        uid TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS password_change_tokens (
        token_id TEXT PRIMARY KEY,
        uid TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    INSERT OR IGNORE INTO db_metadata (name, value) VALUES ('session_tokens_pruned_until', '0');
    INSERT OR IGNORE INTO db_metadata (name, value) VALUES ('session_tokens_last_pruned_at', '0');
"""

CODE_TABLES = {
    "unblock": "unblock_codes",
    "signin": "signin_codes",
}

TOKEN_TABLES = {
    "account_reset": "account_reset_tokens",
    "password_forgot": "password_forgot_tokens",
    "password_change": "password_change_tokens",
}

_COUNTABLE = frozenset(
    {"session_tokens", "unverified_tokens", "devices", *CODE_TABLES.values(), *TOKEN_TABLES.values()}
)


class TokenStoreError(Exception):
    """Raised when the token store cannot complete an operation."""


class TokenStore:
    """Token tables plus the ``prune`` procedure, backed by SQLite.

    Connections are thread-local; the store may be shared across threads.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        lock_timeout: float = PRUNE_LOCK_TIMEOUT_SECONDS,
        batch_limit: int = PRUNE_BATCH_LIMIT,
    ):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        self.batch_limit = batch_limit
        self._local = threading.local()
        self._get_conn().executescript(_SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection (autocommit; transactions are explicit)."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ── Prune procedure ──────────────────────────────────────────

    def prune(
        self,
        cur_time: int,
        max_token_age: int,
        max_code_age: int,
        prune_interval: int,
    ) -> bool:
        """Delete expired codes and tokens.

        All arguments are in milliseconds.  An age of 0 disables that half
        of pruning.

        Returns:
            ``True`` if a prune pass ran, ``False`` if it was skipped because
            another caller holds the lock or pruned within *prune_interval*.

        Raises:
            TokenStoreError: on any database error; the pass is rolled back.
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            # Lock held elsewhere for longer than lock_timeout
            if "locked" in str(exc) or "busy" in str(exc):
                return False
            raise TokenStoreError(f"prune failed: {exc}") from exc

        try:
            last_pruned_at = self._int_metadata(conn, "session_tokens_last_pruned_at")
            if cur_time <= last_pruned_at + prune_interval:
                conn.execute("COMMIT")
                return False

            if max_code_age > 0:
                for table in CODE_TABLES.values():
                    self._delete_older_than(conn, table, cur_time - max_code_age)

            if max_token_age > 0:
                for table in TOKEN_TABLES.values():
                    self._delete_older_than(conn, table, cur_time - max_token_age)
                self._prune_session_tokens(conn, cur_time - max_token_age)

            conn.execute(
                "UPDATE db_metadata SET value = ? WHERE name = 'session_tokens_last_pruned_at'",
                (str(cur_time),),
            )
            conn.execute("COMMIT")
            return True
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise TokenStoreError(f"prune failed: {exc}") from exc

    def _delete_older_than(self, conn: sqlite3.Connection, table: str, cutoff: int) -> None:
        conn.execute(
            f"DELETE FROM {table} WHERE rowid IN ("
            f"SELECT rowid FROM {table} WHERE created_at < ? ORDER BY created_at LIMIT ?)",
            (cutoff, self.batch_limit),
        )

    def _prune_session_tokens(self, conn: sqlite3.Connection, cutoff: int) -> None:
        """Prune one creation-time window of session tokens.

        At most ``batch_limit`` tokens are examined per pass.  Tokens with a
        device record are kept, but the window still advances past them.
        """
        prune_from = self._int_metadata(conn, "session_tokens_pruned_until")
        row = conn.execute(
            "SELECT MAX(created_at) AS prune_until FROM ("
            "SELECT created_at FROM session_tokens "
            "WHERE created_at >= ? AND created_at < ? "
            "ORDER BY created_at LIMIT ?)",
            (prune_from, cutoff, self.batch_limit),
        ).fetchone()
        prune_until = row["prune_until"]
        if prune_until is None:
            return

        victims = (
            "SELECT st.token_id FROM session_tokens AS st "
            "WHERE st.created_at > ? AND st.created_at <= ? "
            "AND NOT EXISTS (SELECT 1 FROM devices AS d "
            "WHERE d.uid = st.uid AND d.session_token_id = st.token_id)"
        )
        conn.execute(
            f"DELETE FROM unverified_tokens WHERE token_id IN ({victims})",
            (prune_from, prune_until),
        )
        conn.execute(
            f"DELETE FROM session_tokens WHERE token_id IN ({victims})",
            (prune_from, prune_until),
        )
        conn.execute(
            "UPDATE db_metadata SET value = ? WHERE name = 'session_tokens_pruned_until'",
            (str(prune_until),),
        )

    @staticmethod
    def _int_metadata(conn: sqlite3.Connection, name: str) -> int:
        row = conn.execute("SELECT value FROM db_metadata WHERE name = ?", (name,)).fetchone()
        # An empty value is treated as "never pruned"
        if row is None or not row["value"]:
            return 0
        return int(row["value"])

    # ── Writes / reads ───────────────────────────────────────────

    def add_session_token(
        self, token_id: str, uid: str, created_at: int, *, verified: bool = True
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO session_tokens (token_id, uid, created_at) VALUES (?, ?, ?)",
            (token_id, uid, created_at),
        )
        if not verified:
            conn.execute(
                "INSERT INTO unverified_tokens (token_id, uid) VALUES (?, ?)",
                (token_id, uid),
            )

    def add_device(self, uid: str, session_token_id: Optional[str]) -> None:
        self._get_conn().execute(
            "INSERT INTO devices (uid, session_token_id) VALUES (?, ?)",
            (uid, session_token_id),
        )

    def add_code(self, kind: str, uid: str, code: str, created_at: int) -> None:
        """Insert an ``unblock`` or ``signin`` code."""
        table = CODE_TABLES[kind]
        self._get_conn().execute(
            f"INSERT INTO {table} (uid, code, created_at) VALUES (?, ?, ?)",
            (uid, code, created_at),
        )

    def add_token(self, kind: str, token_id: str, uid: str, created_at: int) -> None:
        """Insert an ``account_reset``, ``password_forgot`` or ``password_change`` token."""
        table = TOKEN_TABLES[kind]
        self._get_conn().execute(
            f"INSERT INTO {table} (token_id, uid, created_at) VALUES (?, ?, ?)",
            (token_id, uid, created_at),
        )

    def count(self, table: str) -> int:
        if table not in _COUNTABLE:
            raise ValueError(f"Unknown table: {table!r}")
        return self._get_conn().execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def get_metadata(self, name: str) -> Optional[str]:
        row = self._get_conn().execute(
            "SELECT value FROM db_metadata WHERE name = ?", (name,)
        ).fetchone()
        return row["value"] if row else None

    def stats(self) -> Dict[str, Any]:
        return {table: self.count(table) for table in sorted(_COUNTABLE)}
