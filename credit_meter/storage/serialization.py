"""
Wire representations of credit data.

Microcent amounts leave the process as decimal strings so that JSON
consumers never see them as lossy floating-point numbers.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from .models import CreditAccount, LedgerEntry


def _amount(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def serialize_credit_account(account: CreditAccount) -> Dict[str, Any]:
    """Transport-safe form of a credit account."""
    return {
        "userId": account.user_id,
        "balanceMicrocents": _amount(account.balance_microcents),
        "currency": account.currency,
        "autoReloadEnabled": account.auto_reload_enabled,
        "autoReloadThresholdMicrocents": _amount(account.auto_reload_threshold_microcents),
        "autoReloadAmountMicrocents": _amount(account.auto_reload_amount_microcents),
        "createdAt": _timestamp(account.created_at),
        "updatedAt": _timestamp(account.updated_at),
    }


def serialize_ledger_entry(entry: LedgerEntry) -> Dict[str, Any]:
    """Transport-safe form of a ledger entry."""
    return {
        "id": entry.id,
        "userId": entry.user_id,
        "amountMicrocents": _amount(entry.amount_microcents),
        "currency": entry.currency,
        "entryType": entry.entry_type,
        "status": entry.status,
        "reason": entry.reason,
        "externalSource": entry.external_source,
        "externalId": entry.external_id,
        "metadata": dict(entry.metadata),
        "balanceAfterMicrocents": _amount(entry.balance_after_microcents),
        "createdAt": _timestamp(entry.created_at),
    }
