"""
Database connection management.

Provides the SQLite handle shared by the repository. The handle is created
explicitly and passed to whoever needs it; there is no global connection.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..core.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "credit_meter.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000

SCHEMA = """
CREATE TABLE IF NOT EXISTS credit_account (
    user_id TEXT PRIMARY KEY,
    balance_microcents INTEGER NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'usd',
    auto_reload_enabled INTEGER NOT NULL DEFAULT 0,
    auto_reload_threshold_microcents INTEGER,
    auto_reload_amount_microcents INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_ledger (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES credit_account(user_id),
    amount_microcents INTEGER NOT NULL CHECK (amount_microcents <> 0),
    currency TEXT NOT NULL DEFAULT 'usd',
    entry_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'posted',
    reason TEXT NOT NULL,
    external_source TEXT,
    external_id TEXT,
    metadata TEXT,
    balance_after_microcents INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_credit_ledger_user_created
    ON credit_ledger(user_id, created_at);

CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_ledger_external
    ON credit_ledger(external_source, external_id)
    WHERE external_source IS NOT NULL AND external_id IS NOT NULL;
"""


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Database:
    """Handle to the SQLite file backing the credit ledger.

    Every operation opens its own connection, so a single handle can be
    shared between threads. Writes go through transaction(), which takes the
    database write lock up front (BEGIN IMMEDIATE) so concurrent writers
    serialize instead of failing halfway.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        """Initialize the handle.

        Args:
            path: Path to SQLite database file
            busy_timeout_ms: How long a writer waits for the lock before giving up
        """
        if path == ":memory:":
            raise ValueError("In-memory databases are not shared between connections; use a file path")
        self.path = path
        self.busy_timeout_ms = busy_timeout_ms

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode with foreign keys enabled."""
        conn = sqlite3.connect(
            str(Path(self.path)),
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Connection in autocommit mode.

        Reads never wait on writers under WAL. Statements that do need the
        write lock (creating a missing account) report an exhausted wait as
        ConcurrencyConflict.
        """
        conn = self.connect()
        try:
            yield conn
        except sqlite3.OperationalError as e:
            _rollback(conn)
            if _is_lock_error(e):
                raise ConcurrencyConflict(f"Could not acquire write lock: {e}") from e
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically: commit on success, roll back on any error.

        Raises:
            ConcurrencyConflict: If the write lock could not be obtained or the
                commit was aborted by a competing writer
        """
        conn = self.connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if _is_lock_error(e):
                    raise ConcurrencyConflict(f"Could not acquire write lock: {e}") from e
                raise
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if _is_lock_error(e):
                    raise ConcurrencyConflict(f"Transaction aborted: {e}") from e
                raise
            except BaseException:
                _rollback(conn)
                raise
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create the credit tables if they don't exist.

        credit_ledger is append-only: no UPDATE or DELETE is ever issued
        against it.
        """
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.debug("Initialized credit schema at %s", self.path)
