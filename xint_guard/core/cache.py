"""
Response cache with per-entry time-to-live.

The cache does not pick TTLs. Callers pass the TTL for each entry,
typically from the per-category table in configuration.
"""

import hashlib
import json
import logging
import math
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .clock import SystemClock
from .errors import PersistenceFailure
from xint_guard.storage.models import CacheEntry
from xint_guard.storage.repository import CacheRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheHit:
    """A fresh cached value and how old it is in seconds."""
    value: Any
    age: float


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float, Decimal)):
        if not math.isfinite(value):
            return str(value)
        if value == int(value):
            return int(value)
        return float(value)
    if isinstance(value, dict):
        return {
            str(k).strip(): _normalize(v)
            for k, v in value.items()
            if v is not None
        }
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return str(value)


def fingerprint(kind: str, params: Dict[str, Any]) -> str:
    """Canonical hash of a request kind and its parameters.

    Parameter order, whitespace padding, `None` values and int/float spelling
    of the same number do not change the result.
    """
    canonical = json.dumps(
        {"kind": kind.strip(), "params": _normalize(params or {})},
        sort_keys=True,
        separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """Fingerprint to payload store backed by SQLite."""

    def __init__(self, repository: CacheRepository, clock=None):
        self.repository = repository
        self.clock = clock or SystemClock()

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def get(self, key: str) -> Optional[CacheHit]:
        """Return a fresh entry, or None on miss.

        Expired entries are deleted on the way out. Entries that can't be
        read are treated as a miss and get overwritten by the next `put`.
        """
        try:
            entry = self.repository.fetch(key)
        except (ValueError, sqlite3.DatabaseError) as e:
            logger.warning(f"Ignoring unreadable cache entry {key[:12]}: {e}")
            return None

        if entry is None:
            return None

        now = self._now()
        if entry.is_expired(now):
            try:
                self.repository.delete(key)
            except sqlite3.Error as e:
                logger.debug(f"Could not evict expired entry {key[:12]}: {e}")
            return None

        return CacheHit(value=entry.value, age=max(now - entry.fetched_at, 0.0))

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store a value, replacing any existing entry for the key.

        Raises:
            ValueError: If ttl is negative
            PersistenceFailure: If the entry could not be written
        """
        if ttl < 0:
            raise ValueError("ttl cannot be negative")

        entry = CacheEntry(key=key, value=value, fetched_at=self._now(), ttl=float(ttl))
        try:
            self.repository.upsert(entry)
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Could not write cache entry {key[:12]}: {e}") from e

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        try:
            removed = self.repository.clear()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not clear cache: {e}") from e
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def prune(self) -> int:
        """Remove expired entries. Returns the number removed."""
        try:
            return self.repository.delete_expired(self._now())
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not prune cache: {e}") from e

    def size(self) -> int:
        """Number of stored entries, fresh or not yet pruned."""
        try:
            return self.repository.count()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not count cache entries: {e}") from e
