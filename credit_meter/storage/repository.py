"""
Repository pattern for credit data access.

Owns the append-only credit ledger and the account balance projected from it.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..billing.schemas import CreditAccountSettings
from ..core.errors import InvalidAmount, InvalidSettings, NotFound, OutOfRange
from .db import Database
from .models import (
    ENTRY_STATUS_POSTED,
    CreditAccount,
    EntryType,
    LedgerEntry,
    LedgerSummary,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)

# SQLite INTEGER is a signed 64-bit value
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

DEFAULT_LEDGER_LIMIT = 20
MAX_LEDGER_LIMIT = 100
MAX_BATCH_USERS = 100
DEFAULT_SUMMARY_WINDOW_DAYS = 30
MAX_SUMMARY_WINDOW_DAYS = 365

_ACCOUNT_COLUMNS = """
    user_id, balance_microcents, currency, auto_reload_enabled,
    auto_reload_threshold_microcents, auto_reload_amount_microcents,
    created_at, updated_at
"""

_LEDGER_COLUMNS = """
    id, user_id, amount_microcents, currency, entry_type, status, reason,
    external_source, external_id, metadata, balance_after_microcents, created_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_account(row: sqlite3.Row) -> CreditAccount:
    return CreditAccount(
        user_id=row["user_id"],
        balance_microcents=int(row["balance_microcents"]),
        currency=row["currency"],
        auto_reload_enabled=bool(row["auto_reload_enabled"]),
        auto_reload_threshold_microcents=row["auto_reload_threshold_microcents"],
        auto_reload_amount_microcents=row["auto_reload_amount_microcents"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"])
    )


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        user_id=row["user_id"],
        amount_microcents=int(row["amount_microcents"]),
        currency=row["currency"],
        entry_type=row["entry_type"],
        status=row["status"],
        reason=row["reason"],
        external_source=row["external_source"],
        external_id=row["external_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        balance_after_microcents=row["balance_after_microcents"],
        created_at=datetime.fromisoformat(row["created_at"])
    )


def _check_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("user_id is required and cannot be empty")
    return user_id


def _check_int64(value: int, label: str) -> int:
    if value < INT64_MIN or value > INT64_MAX:
        raise OutOfRange(f"{label} exceeds the storable integer range")
    return value


class CreditRepository:
    """Repository for credit accounts and the credit ledger.

    Every balance change goes through apply_credit_delta, which writes a
    ledger entry and increments the balance in a single transaction. Nothing
    else writes balance_microcents.
    """

    def __init__(self, database: Database, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the repository.

        Args:
            database: Storage handle to read and write through
            clock: Source of timestamps, UTC now by default
        """
        self.database = database
        self.clock = clock or _utcnow

    def _stamp(self) -> str:
        return self.clock().isoformat(timespec="microseconds")

    # -- accounts ---------------------------------------------------------

    def insert_account_if_absent(self, conn: sqlite3.Connection, user_id: str) -> bool:
        """Create a zero-balance account row unless one already exists.

        Returns:
            True if this call created the row
        """
        now = self._stamp()
        cursor = conn.execute(
            """
            INSERT INTO credit_account (user_id, created_at, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, now, now)
        )
        return cursor.rowcount > 0

    def _select_account(self, conn: sqlite3.Connection, user_id: str) -> Optional[CreditAccount]:
        row = conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM credit_account WHERE user_id = ?",
            (user_id,)
        ).fetchone()
        return _row_to_account(row) if row else None

    def ensure_credit_account(self, user_id: str) -> CreditAccount:
        """Return the user's account, creating an empty one on first access.

        Existing accounts are only read, so no write lock is taken. A missing
        row is created with an insert that ignores a conflicting row, so
        concurrent first accesses still create exactly one.

        Args:
            user_id: Account owner

        Returns:
            Existing or newly created CreditAccount
        """
        _check_user_id(user_id)
        with self.database.read() as conn:
            account = self._select_account(conn, user_id)
            if account is None:
                if self.insert_account_if_absent(conn, user_id):
                    logger.info("Created credit account for user %s", user_id)
                account = self._select_account(conn, user_id)
        if account is None:
            raise NotFound(f"Unable to create credit account for user {user_id}")
        return account

    def get_credit_account(self, user_id: str) -> CreditAccount:
        """Read an account without creating it.

        Raises:
            NotFound: If the user has no account yet
        """
        _check_user_id(user_id)
        with self.database.read() as conn:
            account = self._select_account(conn, user_id)
        if account is None:
            raise NotFound(f"Missing credit account for user {user_id}")
        return account

    def get_balances(self, user_ids: Iterable[str]) -> List[CreditAccount]:
        """Ensure and fetch accounts for a batch of users.

        Ids are trimmed and de-duplicated, and at most 100 are processed.
        """
        unique_ids: List[str] = []
        for user_id in user_ids:
            trimmed = (user_id or "").strip()
            if trimmed and trimmed not in unique_ids:
                unique_ids.append(trimmed)
        unique_ids = unique_ids[:MAX_BATCH_USERS]
        if not unique_ids:
            raise ValueError("user_ids is required")

        with self.database.read() as conn:
            for user_id in unique_ids:
                self.insert_account_if_absent(conn, user_id)
            placeholders = ", ".join("?" for _ in unique_ids)
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM credit_account WHERE user_id IN ({placeholders})",
                unique_ids
            ).fetchall()
        by_id = {row["user_id"]: _row_to_account(row) for row in rows}
        return [by_id[user_id] for user_id in unique_ids if user_id in by_id]

    def update_credit_account_settings(
        self,
        user_id: str,
        settings: Union[CreditAccountSettings, Mapping[str, Any]]
    ) -> CreditAccount:
        """Update auto-reload settings.

        Unset fields keep their stored value. When auto-reload ends up
        disabled, threshold and amount are cleared. Balance and ledger are
        never touched.

        Args:
            user_id: Account owner
            settings: CreditAccountSettings or a mapping accepted by it

        Returns:
            Updated CreditAccount

        Raises:
            InvalidSettings: If auto-reload would be enabled without a
                threshold and a positive amount
        """
        _check_user_id(user_id)
        if not isinstance(settings, CreditAccountSettings):
            try:
                settings = CreditAccountSettings.model_validate(dict(settings))
            except ValidationError as e:
                raise InvalidSettings("Invalid auto-reload settings", errors=e.errors()) from e

        provided = settings.model_fields_set
        self.ensure_credit_account(user_id)

        with self.database.transaction() as conn:
            current = self._select_account(conn, user_id)
            if current is None:
                raise NotFound(f"Missing credit account for user {user_id}")

            enabled = current.auto_reload_enabled
            threshold = current.auto_reload_threshold_microcents
            amount = current.auto_reload_amount_microcents
            if "auto_reload_enabled" in provided and settings.auto_reload_enabled is not None:
                enabled = settings.auto_reload_enabled
            if "auto_reload_threshold_microcents" in provided:
                threshold = settings.auto_reload_threshold_microcents
            if "auto_reload_amount_microcents" in provided:
                amount = settings.auto_reload_amount_microcents

            if enabled:
                if threshold is None or amount is None or amount <= 0:
                    raise InvalidSettings("Auto-reload requires threshold and amount")
                _check_int64(threshold, "auto_reload_threshold_microcents")
                _check_int64(amount, "auto_reload_amount_microcents")
            else:
                threshold = None
                amount = None

            conn.execute(
                """
                UPDATE credit_account
                SET auto_reload_enabled = ?,
                    auto_reload_threshold_microcents = ?,
                    auto_reload_amount_microcents = ?,
                    updated_at = ?
                WHERE user_id = ?
                """,
                (int(enabled), threshold, amount, self._stamp(), user_id)
            )
            updated = self._select_account(conn, user_id)

        logger.info(
            "Updated auto-reload for user %s: enabled=%s threshold=%s amount=%s",
            user_id, enabled, threshold, amount
        )
        return updated

    # -- ledger -----------------------------------------------------------

    def apply_credit_delta(
        self,
        user_id: str,
        amount_microcents: int,
        entry_type: Union[EntryType, str],
        reason: str,
        external_source: Optional[str] = None,
        external_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """Record a balance change and apply it to the account.

        The ledger entry and the balance increment commit together or not at
        all. No sufficiency check is made: the ledger records what happened.
        When external_source and external_id are both given and already
        recorded, nothing is written and the current balance is returned.

        Args:
            user_id: Account owner
            amount_microcents: Signed, nonzero delta
            entry_type: Kind of event
            reason: Human-readable description
            external_source: System that originated the event
            external_id: Id of the event in that system, for idempotency
            metadata: Extra JSON-serializable details

        Returns:
            Balance in microcents after the delta

        Raises:
            InvalidAmount: If amount_microcents is not a nonzero integer
            OutOfRange: If the amount or resulting balance cannot be stored
            ConcurrencyConflict: If the transaction could not obtain the write lock
        """
        _check_user_id(user_id)
        if isinstance(amount_microcents, bool) or not isinstance(amount_microcents, int):
            raise InvalidAmount("amount_microcents must be an integer")
        if amount_microcents == 0:
            raise InvalidAmount("amount_microcents must be non-zero")
        _check_int64(amount_microcents, "amount_microcents")
        entry_type = EntryType(entry_type).value
        if not reason or not reason.strip():
            raise ValueError("reason is required and cannot be empty")
        metadata_json = json.dumps(metadata or {}, default=str)

        self.ensure_credit_account(user_id)

        with self.database.transaction() as conn:
            (balance, currency) = conn.execute(
                "SELECT balance_microcents, currency FROM credit_account WHERE user_id = ?",
                (user_id,)
            ).fetchone()
            balance_after = _check_int64(balance + amount_microcents, "balance_microcents")
            now = self._stamp()

            cursor = conn.execute(
                f"""
                INSERT INTO credit_ledger ({_LEDGER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    uuid.uuid4().hex,
                    user_id,
                    amount_microcents,
                    currency,
                    entry_type,
                    ENTRY_STATUS_POSTED,
                    reason,
                    external_source,
                    external_id,
                    metadata_json,
                    balance_after,
                    now
                )
            )
            if cursor.rowcount == 0:
                logger.info(
                    "Skipped duplicate ledger entry %s/%s for user %s",
                    external_source, external_id, user_id
                )
                return balance

            conn.execute(
                """
                UPDATE credit_account
                SET balance_microcents = balance_microcents + ?, updated_at = ?
                WHERE user_id = ?
                """,
                (amount_microcents, now, user_id)
            )
            (new_balance,) = conn.execute(
                "SELECT balance_microcents FROM credit_account WHERE user_id = ?",
                (user_id,)
            ).fetchone()

        logger.info(
            "Applied %s delta of %d microcents to user %s (balance %d)",
            entry_type, amount_microcents, user_id, new_balance
        )
        return int(new_balance)

    def list_credit_ledger(
        self,
        user_id: str,
        limit: int = DEFAULT_LEDGER_LIMIT,
        offset: int = 0
    ) -> List[LedgerEntry]:
        """Fetch ledger entries for a user, newest first.

        Args:
            user_id: Account owner
            limit: Page size, clamped to [1, 100]
            offset: Entries to skip, at least 0

        Returns:
            List of ledger entries ordered newest first
        """
        _check_user_id(user_id)
        limit = min(max(int(limit if limit is not None else DEFAULT_LEDGER_LIMIT), 1), MAX_LEDGER_LIMIT)
        offset = max(int(offset or 0), 0)
        with self.database.read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_LEDGER_COLUMNS} FROM credit_ledger
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset)
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def summarize_credit_ledger(
        self,
        user_id: str,
        window_days: Optional[int] = DEFAULT_SUMMARY_WINDOW_DAYS
    ) -> LedgerSummary:
        """Total spent and credited amounts over the last window_days days.

        Non-positive windows fall back to 30 days; windows are capped at 365.
        """
        _check_user_id(user_id)
        if not window_days or window_days <= 0:
            window_days = DEFAULT_SUMMARY_WINDOW_DAYS
        window_days = min(int(window_days), MAX_SUMMARY_WINDOW_DAYS)
        window_start = (self.clock() - timedelta(days=window_days)).isoformat(timespec="microseconds")

        with self.database.read() as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN amount_microcents < 0 THEN -amount_microcents ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN amount_microcents > 0 THEN amount_microcents ELSE 0 END), 0)
                FROM credit_ledger
                WHERE user_id = ? AND created_at >= ?
                """,
                (user_id, window_start)
            ).fetchone()

        return LedgerSummary(
            user_id=user_id,
            window_days=window_days,
            total_spent_microcents=int(row[0]),
            total_credits_microcents=int(row[1])
        )

    def reconcile(self, user_id: str) -> ReconciliationResult:
        """Compare the stored balance with the sum of the user's entries.

        Both values are read in one snapshot.

        Raises:
            NotFound: If the user has no account
        """
        _check_user_id(user_id)
        with self.database.read() as conn:
            conn.execute("BEGIN")
            try:
                account = self._select_account(conn, user_id)
                (ledger_sum, entry_count) = conn.execute(
                    "SELECT COALESCE(SUM(amount_microcents), 0), COUNT(*) FROM credit_ledger WHERE user_id = ?",
                    (user_id,)
                ).fetchone()
            finally:
                conn.execute("COMMIT")
        if account is None:
            raise NotFound(f"Missing credit account for user {user_id}")

        result = ReconciliationResult(
            user_id=user_id,
            balance_microcents=account.balance_microcents,
            ledger_sum_microcents=int(ledger_sum),
            entry_count=int(entry_count)
        )
        if not result.consistent:
            logger.warning(
                "Ledger mismatch for user %s: balance %d, ledger sum %d",
                user_id, result.balance_microcents, result.ledger_sum_microcents
            )
        return result
