"""
Core modules for Credit Meter.

This package contains the currency codec, the pricing engine and the
caller-side credit decisions.
"""
