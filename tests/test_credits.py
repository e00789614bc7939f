"""
Unit tests for caller-side credit decisions.
"""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from credit_meter.core.credits import (
    AutoReloadReason,
    ensure_sufficient_balance,
    get_auto_reload_decision,
)
from credit_meter.core.errors import InsufficientCredits, InvalidAmount
from credit_meter.storage.models import CreditAccount

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

ACCOUNT = CreditAccount(
    user_id="user_1",
    balance_microcents=1_000_000,
    currency="usd",
    auto_reload_enabled=True,
    auto_reload_threshold_microcents=500_000,
    auto_reload_amount_microcents=10_000_000,
    created_at=NOW,
    updated_at=NOW
)


class TestAutoReloadDecision:
    """Test when an account is due for a top-up."""

    def test_disabled(self):
        decision = get_auto_reload_decision(replace(ACCOUNT, auto_reload_enabled=False))
        assert not decision.should_reload
        assert decision.reason == AutoReloadReason.DISABLED

    def test_missing_config(self):
        decision = get_auto_reload_decision(replace(ACCOUNT, auto_reload_amount_microcents=None))
        assert not decision.should_reload
        assert decision.reason == AutoReloadReason.MISSING_CONFIG

    def test_above_threshold(self):
        decision = get_auto_reload_decision(ACCOUNT)
        assert not decision.should_reload
        assert decision.reason == AutoReloadReason.ABOVE_THRESHOLD
        assert decision.amount_microcents is None

    @pytest.mark.parametrize("balance", [500_000, 0, -1])
    def test_at_or_below_threshold(self, balance):
        decision = get_auto_reload_decision(replace(ACCOUNT, balance_microcents=balance))
        assert decision.should_reload
        assert decision.reason == AutoReloadReason.BELOW_THRESHOLD
        assert decision.amount_microcents == 10_000_000


class TestEnsureSufficientBalance:
    """Test the pre-flight balance check."""

    def test_sufficient_returns_remaining(self):
        assert ensure_sufficient_balance(ACCOUNT, 400_000) == 600_000
        assert ensure_sufficient_balance(ACCOUNT, 1_000_000) == 0

    def test_insufficient_raises_with_details(self):
        with pytest.raises(InsufficientCredits) as exc_info:
            ensure_sufficient_balance(ACCOUNT, 1_000_001)
        assert exc_info.value.balance_microcents == 1_000_000
        assert exc_info.value.required_microcents == 1_000_001

    def test_minimum_balance(self):
        with pytest.raises(InsufficientCredits):
            ensure_sufficient_balance(ACCOUNT, 600_000, min_balance_microcents=500_000)

    def test_negative_required_raises(self):
        with pytest.raises(InvalidAmount):
            ensure_sufficient_balance(ACCOUNT, -1)
