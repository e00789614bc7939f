"""
Credit Meter.

Prices AI gateway usage in exact microcents and keeps per-user credit
balances on an append-only ledger.
"""

__version__ = "0.1.0"
