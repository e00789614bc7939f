"""
Caller-side credit decisions.

The ledger records every delta unconditionally; deciding whether a user can
afford new work, or whether an account should be topped up, happens here,
before any charge is requested.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..storage.models import CreditAccount
from .errors import InsufficientCredits, InvalidAmount


class AutoReloadReason(str, Enum):
    """Why an auto-reload decision came out the way it did."""
    DISABLED = "disabled"
    MISSING_CONFIG = "missing-config"
    ABOVE_THRESHOLD = "above-threshold"
    BELOW_THRESHOLD = "below-threshold"


@dataclass(frozen=True)
class AutoReloadDecision:
    should_reload: bool
    reason: AutoReloadReason
    amount_microcents: Optional[int] = None


def get_auto_reload_decision(account: CreditAccount) -> AutoReloadDecision:
    """Decide whether an account is due for an auto-reload top-up.

    A reload is due once the balance has fallen to or below the configured
    threshold. Issuing the top-up itself is up to the caller.

    Args:
        account: Current account state

    Returns:
        AutoReloadDecision with the amount to add when a reload is due
    """
    if not account.auto_reload_enabled:
        return AutoReloadDecision(False, AutoReloadReason.DISABLED)

    threshold = account.auto_reload_threshold_microcents
    amount = account.auto_reload_amount_microcents
    if threshold is None or amount is None or amount <= 0:
        return AutoReloadDecision(False, AutoReloadReason.MISSING_CONFIG)

    if account.balance_microcents > threshold:
        return AutoReloadDecision(False, AutoReloadReason.ABOVE_THRESHOLD)

    return AutoReloadDecision(True, AutoReloadReason.BELOW_THRESHOLD, amount_microcents=amount)


def ensure_sufficient_balance(
    account: CreditAccount,
    required_microcents: int,
    min_balance_microcents: int = 0
) -> int:
    """Check that the account can cover an amount before work is started.

    Args:
        account: Current account state
        required_microcents: Expected cost of the work (>= 0)
        min_balance_microcents: Lowest balance allowed after the charge

    Returns:
        Balance that would remain after the charge

    Raises:
        InvalidAmount: If required_microcents is negative
        InsufficientCredits: If the remaining balance would drop below the minimum
    """
    if required_microcents < 0:
        raise InvalidAmount("required_microcents must be non-negative")

    remaining = account.balance_microcents - required_microcents
    if remaining < min_balance_microcents:
        raise InsufficientCredits(
            "Insufficient credits",
            balance_microcents=account.balance_microcents,
            required_microcents=required_microcents,
            min_balance_microcents=min_balance_microcents
        )
    return remaining
