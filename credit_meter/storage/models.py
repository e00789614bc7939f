"""
Data models for storage layer.

Defines the credit account projection and the ledger entries it is derived from.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EntryType(str, Enum):
    """Kinds of balance-affecting events."""
    USAGE = "usage"
    CHARGE = "charge"
    ADJUSTMENT = "adjustment"
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    AUTO_RELOAD = "auto_reload"


ENTRY_STATUS_POSTED = "posted"


@dataclass(frozen=True)
class CreditAccount:
    """Per-user balance and auto-reload settings.

    balance_microcents is a projection of the ledger: it only ever changes as
    a side effect of inserting a ledger entry.
    """
    user_id: str
    balance_microcents: int
    currency: str
    auto_reload_enabled: bool
    auto_reload_threshold_microcents: Optional[int]
    auto_reload_amount_microcents: Optional[int]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one balance-affecting event.

    Append-only entries that create an auditable history of every credit
    and charge. Once written, these records must never be modified.
    """
    id: str
    user_id: str
    amount_microcents: int
    entry_type: str
    reason: str
    created_at: datetime
    currency: str = "usd"
    status: str = ENTRY_STATUS_POSTED
    external_source: Optional[str] = None
    external_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    balance_after_microcents: Optional[int] = None


@dataclass(frozen=True)
class LedgerSummary:
    """Spending and credit totals over a trailing window."""
    user_id: str
    window_days: int
    total_spent_microcents: int
    total_credits_microcents: int


@dataclass(frozen=True)
class ReconciliationResult:
    """Stored balance compared against the sum of ledger entries."""
    user_id: str
    balance_microcents: int
    ledger_sum_microcents: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.balance_microcents == self.ledger_sum_microcents
