"""
SDK for xint-guard.

Provides budget-guarded access to the X and xAI APIs.
"""

from .clients import GuardedGrok, GuardedXClient
from .transports import RoutingTransport, XaiTransport, XApiTransport

__all__ = ["GuardedGrok", "GuardedXClient", "RoutingTransport", "XaiTransport", "XApiTransport"]
