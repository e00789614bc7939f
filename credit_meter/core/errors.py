"""
Error kinds raised by the credit meter.

Validation errors subclass ValueError so callers that only care about
"bad input" can catch them generically.
"""

from typing import Any, List, Optional


class CreditMeterError(Exception):
    """Base class for all credit meter errors."""


class InvalidAmount(CreditMeterError, ValueError):
    """Malformed, negative or otherwise unusable monetary amount."""


class OutOfRange(CreditMeterError, ValueError):
    """Value does not fit the integer range it has to be represented in."""


class InvalidSettings(CreditMeterError, ValueError):
    """Account settings violate the auto-reload invariant."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFound(CreditMeterError, LookupError):
    """Requested account or entry does not exist."""


class ConcurrencyConflict(CreditMeterError):
    """Storage aborted the transaction; nothing was applied, retry the operation."""


class InsufficientCredits(CreditMeterError):
    """Balance cannot cover a requested amount."""

    def __init__(
        self,
        message: str,
        balance_microcents: int,
        required_microcents: int,
        min_balance_microcents: int
    ):
        super().__init__(message)
        self.balance_microcents = balance_microcents
        self.required_microcents = required_microcents
        self.min_balance_microcents = min_balance_microcents
