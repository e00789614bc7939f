"""
Unit tests for storage layer.

Tests schema creation, account creation, delta application and ledger reads.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from credit_meter.core.errors import InvalidAmount, NotFound, OutOfRange
from credit_meter.storage.db import Database
from credit_meter.storage.models import EntryType
from credit_meter.storage.repository import CreditRepository


class StorageTestCase:
    """Temporary database shared by the storage tests."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.database = Database(self.db_path)
        self.database.initialize_schema()
        self.repository = CreditRepository(self.database)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _count_rows(self, table: str) -> int:
        conn = sqlite3.connect(self.db_path)
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        finally:
            conn.close()


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify both tables are created."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table' AND name IN ('credit_account', 'credit_ledger')
                ORDER BY name
            """)
            assert [row[0] for row in cursor.fetchall()] == ["credit_account", "credit_ledger"]

            cursor = conn.execute("PRAGMA table_info(credit_ledger)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'user_id', 'amount_microcents', 'currency', 'entry_type',
                'status', 'reason', 'external_source', 'external_id', 'metadata',
                'balance_after_microcents', 'created_at'
            ]
        finally:
            conn.close()

    def test_schema_initialization_is_repeatable(self):
        self.database.initialize_schema()
        self.database.initialize_schema()
        assert self._count_rows("credit_account") == 0

    def test_in_memory_database_rejected(self):
        with pytest.raises(ValueError, match="In-memory"):
            Database(":memory:")


class TestEnsureCreditAccount(StorageTestCase):
    """Test lazy account creation."""

    def test_creates_zero_balance_account(self):
        account = self.repository.ensure_credit_account("user_1")
        assert account.user_id == "user_1"
        assert account.balance_microcents == 0
        assert account.currency == "usd"
        assert account.auto_reload_enabled is False
        assert account.auto_reload_threshold_microcents is None
        assert account.auto_reload_amount_microcents is None

    def test_is_idempotent(self):
        """Verify a second call returns the same row."""
        first = self.repository.ensure_credit_account("user_1")
        second = self.repository.ensure_credit_account("user_1")
        assert first == second
        assert self._count_rows("credit_account") == 1

    def test_empty_user_id_raises(self):
        with pytest.raises(ValueError, match="user_id is required"):
            self.repository.ensure_credit_account("  ")

    def test_get_missing_account_raises_not_found(self):
        """Verify a missing account is distinct from a zero balance."""
        with pytest.raises(NotFound):
            self.repository.get_credit_account("ghost")

        self.repository.ensure_credit_account("ghost")
        assert self.repository.get_credit_account("ghost").balance_microcents == 0


class TestApplyCreditDelta(StorageTestCase):
    """Test the atomic entry insert and balance increment."""

    def test_charge_worked_example(self):
        """Verify a charge against a funded account."""
        self.repository.apply_credit_delta("user_1", 5_000_000, EntryType.CREDIT, "Top-up")

        balance = self.repository.apply_credit_delta("user_1", -1_150_000, "charge", "Chat usage")

        assert balance == 3_850_000
        assert self.repository.get_credit_account("user_1").balance_microcents == 3_850_000
        entries = self.repository.list_credit_ledger("user_1")
        assert len(entries) == 2
        assert entries[0].amount_microcents == -1_150_000
        assert entries[0].entry_type == "charge"
        assert entries[0].balance_after_microcents == 3_850_000
        assert entries[0].status == "posted"
        assert entries[1].amount_microcents == 5_000_000

    def test_creates_account_on_first_delta(self):
        assert self.repository.apply_credit_delta("new_user", 100, "credit", "Welcome") == 100

    def test_balance_may_go_negative(self):
        """Verify the ledger records charges regardless of funds."""
        assert self.repository.apply_credit_delta("user_1", -100, "usage", "Chat usage") == -100

    def test_metadata_and_sources_are_stored(self):
        self.repository.apply_credit_delta(
            "user_1", 250, "adjustment", "Goodwill",
            external_source="admin",
            metadata={"adminUserId": "admin_1", "note": None}
        )
        entry = self.repository.list_credit_ledger("user_1")[0]
        assert entry.external_source == "admin"
        assert entry.external_id is None
        assert entry.metadata == {"adminUserId": "admin_1", "note": None}

    @pytest.mark.parametrize("amount", [0, 1.5, "100", True, None])
    def test_invalid_amount_raises_before_writing(self, amount):
        with pytest.raises(InvalidAmount):
            self.repository.apply_credit_delta("user_1", amount, "credit", "Bad")
        assert self._count_rows("credit_ledger") == 0
        assert self._count_rows("credit_account") == 0

    def test_amount_beyond_storage_range_raises(self):
        with pytest.raises(OutOfRange):
            self.repository.apply_credit_delta("user_1", 2 ** 63, "credit", "Too much")

    def test_balance_overflow_raises_and_writes_nothing(self):
        self.repository.apply_credit_delta("user_1", 2 ** 63 - 1, "credit", "Max")
        with pytest.raises(OutOfRange):
            self.repository.apply_credit_delta("user_1", 1, "credit", "Overflow")
        assert self._count_rows("credit_ledger") == 1

    def test_unknown_entry_type_raises(self):
        with pytest.raises(ValueError):
            self.repository.apply_credit_delta("user_1", 100, "gift", "Unknown type")

    def test_empty_reason_raises(self):
        with pytest.raises(ValueError, match="reason is required"):
            self.repository.apply_credit_delta("user_1", 100, "credit", " ")

    def test_external_id_makes_delta_idempotent(self):
        """Verify replaying the same external event applies it once."""
        first = self.repository.apply_credit_delta(
            "user_1", -500, "usage", "Chat usage", external_source="gateway", external_id="gen_1"
        )
        second = self.repository.apply_credit_delta(
            "user_1", -500, "usage", "Chat usage", external_source="gateway", external_id="gen_1"
        )
        assert first == second == -500
        assert self._count_rows("credit_ledger") == 1

    def test_same_external_id_from_other_source_is_distinct(self):
        self.repository.apply_credit_delta("user_1", 100, "credit", "A", external_source="a", external_id="1")
        self.repository.apply_credit_delta("user_1", 100, "credit", "B", external_source="b", external_id="1")
        assert self.repository.get_credit_account("user_1").balance_microcents == 200

    def test_failed_balance_update_rolls_back_entry(self):
        """Verify entry and balance commit together or not at all."""
        self.repository.ensure_credit_account("user_1")
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                CREATE TRIGGER fail_balance BEFORE UPDATE OF balance_microcents ON credit_account
                BEGIN SELECT RAISE(ABORT, 'balance update failed'); END
            """)
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(sqlite3.Error):
            self.repository.apply_credit_delta("user_1", 100, "credit", "Doomed")

        assert self._count_rows("credit_ledger") == 0
        assert self.repository.get_credit_account("user_1").balance_microcents == 0


class TestListCreditLedger(StorageTestCase):
    """Test ledger pagination and ordering."""

    def setup_method(self):
        super().setup_method()
        for amount in (100, 200, 300):
            self.repository.apply_credit_delta("user_1", amount, "credit", f"Credit {amount}")

    def test_newest_first(self):
        amounts = [e.amount_microcents for e in self.repository.list_credit_ledger("user_1")]
        assert amounts == [300, 200, 100]

    def test_limit_is_clamped(self):
        assert len(self.repository.list_credit_ledger("user_1", limit=0)) == 1
        assert len(self.repository.list_credit_ledger("user_1", limit=-5)) == 1
        assert len(self.repository.list_credit_ledger("user_1", limit=500)) == 3

    def test_offset(self):
        amounts = [e.amount_microcents for e in self.repository.list_credit_ledger("user_1", limit=10, offset=1)]
        assert amounts == [200, 100]
        assert len(self.repository.list_credit_ledger("user_1", offset=-3)) == 3

    def test_other_users_are_excluded(self):
        self.repository.apply_credit_delta("user_2", 999, "credit", "Other")
        assert len(self.repository.list_credit_ledger("user_1")) == 3

    def test_unknown_user_has_no_entries(self):
        assert self.repository.list_credit_ledger("nobody") == []


class TestBalancesAndSummary(StorageTestCase):
    """Test admin batch lookups and windowed summaries."""

    def test_get_balances_dedupes_and_creates(self):
        self.repository.apply_credit_delta("a", 100, "credit", "Seed")
        accounts = self.repository.get_balances(["a", " a ", "b", ""])
        assert [a.user_id for a in accounts] == ["a", "b"]
        assert [a.balance_microcents for a in accounts] == [100, 0]

    def test_get_balances_caps_batch(self):
        accounts = self.repository.get_balances([f"user_{i}" for i in range(150)])
        assert len(accounts) == 100

    def test_get_balances_requires_ids(self):
        with pytest.raises(ValueError):
            self.repository.get_balances([" "])

    def test_summary_totals_within_window(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        old = CreditRepository(self.database, clock=lambda: now - timedelta(days=40))
        recent = CreditRepository(self.database, clock=lambda: now - timedelta(days=1))
        old.apply_credit_delta("user_1", 10_000, "credit", "Old top-up")
        recent.apply_credit_delta("user_1", 5_000, "credit", "Top-up")
        recent.apply_credit_delta("user_1", -1_500, "usage", "Usage")
        recent.apply_credit_delta("user_1", -500, "usage", "Usage")

        summary = CreditRepository(self.database, clock=lambda: now).summarize_credit_ledger("user_1", 30)

        assert summary.window_days == 30
        assert summary.total_spent_microcents == 2_000
        assert summary.total_credits_microcents == 5_000

    def test_summary_window_is_clamped(self):
        assert self.repository.summarize_credit_ledger("user_1", 0).window_days == 30
        assert self.repository.summarize_credit_ledger("user_1", None).window_days == 30
        assert self.repository.summarize_credit_ledger("user_1", 1000).window_days == 365


class TestReconcile(StorageTestCase):
    """Test balance and ledger reconciliation."""

    def test_balance_matches_ledger(self):
        for amount in (5_000_000, -1_150_000, 250, -99):
            self.repository.apply_credit_delta("user_1", amount, "adjustment", "Mixed")

        result = self.repository.reconcile("user_1")

        assert result.consistent
        assert result.entry_count == 4
        assert result.ledger_sum_microcents == result.balance_microcents == 3_850_151

    def test_detects_drift(self):
        self.repository.apply_credit_delta("user_1", 100, "credit", "Seed")
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("UPDATE credit_account SET balance_microcents = 1 WHERE user_id = 'user_1'")
            conn.commit()
        finally:
            conn.close()

        result = self.repository.reconcile("user_1")
        assert not result.consistent
        assert result.ledger_sum_microcents == 100

    def test_unknown_user_raises(self):
        with pytest.raises(NotFound):
            self.repository.reconcile("ghost")
