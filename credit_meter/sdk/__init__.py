"""
SDK for Credit Meter.

Provides a gateway chat client that bills completions to credit accounts.
"""

from .gateway_client import GatewayChatClient

__all__ = ["GatewayChatClient"]
