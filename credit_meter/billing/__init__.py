"""
Billing consumers of the credit ledger and their boundary schemas.
"""
