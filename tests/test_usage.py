"""
Unit tests for token usage snapshots and wire serialization.
"""

from datetime import datetime, timezone

from credit_meter.core.usage import TokenUsage
from credit_meter.storage.models import CreditAccount, LedgerEntry
from credit_meter.storage.serialization import serialize_credit_account, serialize_ledger_entry


class TestTokenUsage:
    """Test normalization of usage payloads."""

    def test_gateway_keys(self):
        usage = TokenUsage.from_raw({
            "inputTokens": 120,
            "outputTokens": 30,
            "inputTokenDetails": {"cacheReadTokens": 100},
            "outputTokenDetails": {"reasoningTokens": 12},
        })
        assert usage.input_tokens == 120
        assert usage.output_tokens == 30
        assert usage.cached_input_tokens == 100
        assert usage.reasoning_tokens == 12
        assert usage.total_tokens == 150

    def test_openai_keys(self):
        usage = TokenUsage.from_raw({
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 16,
            "prompt_tokens_details": {"cached_tokens": 4},
        })
        assert usage.total_tokens == 16
        assert usage.cached_input_tokens == 4

    def test_unusable_values_become_zero(self):
        usage = TokenUsage.from_raw({"inputTokens": -3, "outputTokens": "abc", "totalTokens": True})
        assert usage.input_tokens == 0
        assert usage.output_tokens == 0
        assert not usage.has_values

    def test_empty_payload(self):
        assert TokenUsage.from_raw(None) == TokenUsage()

    def test_to_dict(self):
        assert TokenUsage(input_tokens=2, output_tokens=3).to_dict() == {
            "input_tokens": 2,
            "output_tokens": 3,
            "cached_input_tokens": 0,
            "reasoning_tokens": 0,
            "total_tokens": 5,
        }


class TestSerialization:
    """Test transport forms of accounts and entries."""

    def test_account_amounts_are_strings(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        account = CreditAccount("user_1", 2 ** 62, "usd", False, None, None, now, now)

        data = serialize_credit_account(account)

        assert data["balanceMicrocents"] == str(2 ** 62)
        assert data["autoReloadThresholdMicrocents"] is None
        assert data["createdAt"] == "2024-06-01T00:00:00+00:00"

    def test_ledger_entry(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        entry = LedgerEntry(
            id="e1", user_id="user_1", amount_microcents=-1_150_000, entry_type="usage",
            reason="Chat usage", created_at=now, balance_after_microcents=3_850_000
        )

        data = serialize_ledger_entry(entry)

        assert data["amountMicrocents"] == "-1150000"
        assert data["balanceAfterMicrocents"] == "3850000"
        assert data["status"] == "posted"
        assert data["metadata"] == {}
