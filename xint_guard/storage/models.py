"""
Data models for storage layer.

Defines persisted records for the budget ledger and response cache.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class BudgetRecord:
    """Spend and limit for one UTC calendar day."""
    date: date
    spent: Decimal
    limit: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(self.limit - self.spent, Decimal("0"))


@dataclass(frozen=True)
class CostEvent:
    """Immutable record of one paid API call.

    Append-only events that justify every increment of a day's spend.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    endpoint: str
    amount: Decimal


@dataclass(frozen=True)
class CacheEntry:
    """Cached response payload with its freshness window."""
    key: str
    value: Any
    fetched_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.fetched_at + self.ttl

    def is_expired(self, now: float) -> bool:
        """True once the entry may no longer be served."""
        return now >= self.expires_at
