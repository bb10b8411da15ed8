"""
Repository pattern for data access.

Handles database operations for the budget ledger and the response cache.
Write operations run in a single transaction so that a concurrent reader,
in this process or another, never observes a half-applied change.
"""

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import BudgetRecord, CacheEntry, CostEvent


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and cache tables if they don't exist.

    `cost_event` is an append-only ledger. No UPDATE or DELETE operations
    should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS budget_day (
                day TEXT PRIMARY KEY,
                spent_usd TEXT NOT NULL,
                limit_usd TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cost_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                day TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                amount_usd TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_cost_event_day ON cost_event (day)")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entry (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                fetched_at REAL NOT NULL,
                ttl REAL NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class LedgerRepository:
    """Persistent store for daily budget records and cost events."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _ensure_day(
        self,
        conn: sqlite3.Connection,
        day: date,
        default_limit: Decimal
    ) -> BudgetRecord:
        """Return the record for `day`, creating it inside the open transaction.

        A new day starts at zero spend and carries forward the limit of the
        most recent earlier day, or `default_limit` when there is none.
        """
        row = conn.execute(
            "SELECT spent_usd, limit_usd FROM budget_day WHERE day = ?",
            (day.isoformat(),)
        ).fetchone()
        if row is not None:
            return BudgetRecord(date=day, spent=Decimal(row[0]), limit=Decimal(row[1]))

        previous = conn.execute(
            "SELECT limit_usd FROM budget_day WHERE day < ? ORDER BY day DESC LIMIT 1",
            (day.isoformat(),)
        ).fetchone()
        limit = Decimal(previous[0]) if previous else default_limit
        conn.execute(
            "INSERT INTO budget_day (day, spent_usd, limit_usd) VALUES (?, ?, ?)",
            (day.isoformat(), "0", str(limit))
        )
        return BudgetRecord(date=day, spent=Decimal("0"), limit=limit)

    def get_or_create_day(self, day: date, default_limit: Decimal) -> BudgetRecord:
        """Get the budget record for a day, creating it lazily."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            record = self._ensure_day(conn, day, default_limit)
            conn.commit()
            return record
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record_cost(self, event: CostEvent, default_limit: Decimal) -> BudgetRecord:
        """Append a cost event and add its amount to the day's spend.

        Both writes happen in one transaction: either the event and the new
        total are persisted together, or neither is.

        Args:
            event: The cost event to record
            default_limit: Limit used if the event's day has no record yet

        Returns:
            The updated budget record for the event's day
        """
        day = event.timestamp.date()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            record = self._ensure_day(conn, day, default_limit)
            conn.execute("""
                INSERT INTO cost_event (timestamp, day, endpoint, amount_usd)
                VALUES (?, ?, ?, ?)
            """, (
                event.timestamp.isoformat(),
                day.isoformat(),
                event.endpoint,
                str(event.amount)
            ))
            spent = record.spent + event.amount
            conn.execute(
                "UPDATE budget_day SET spent_usd = ? WHERE day = ?",
                (str(spent), day.isoformat())
            )
            conn.commit()
            return BudgetRecord(date=day, spent=spent, limit=record.limit)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def set_limit(self, day: date, limit: Decimal, default_limit: Decimal) -> BudgetRecord:
        """Set the limit for a day without touching its committed spend."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            record = self._ensure_day(conn, day, default_limit)
            conn.execute(
                "UPDATE budget_day SET limit_usd = ? WHERE day = ?",
                (str(limit), day.isoformat())
            )
            conn.commit()
            return BudgetRecord(date=day, spent=record.spent, limit=limit)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_cost_events(
        self,
        since: Optional[date] = None,
        limit: int = 1000
    ) -> List[CostEvent]:
        """Fetch cost events, newest first.

        Args:
            since: Optional first UTC day to include
            limit: Maximum number of events to return
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT timestamp, endpoint, amount_usd FROM cost_event"
            params: list = []
            if since is not None:
                query += " WHERE day >= ?"
                params.append(since.isoformat())
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            return [
                CostEvent(
                    timestamp=datetime.fromisoformat(row[0]),
                    endpoint=row[1],
                    amount=Decimal(row[2])
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def costs_by_endpoint(self, since: Optional[date] = None) -> List[Tuple[str, int, Decimal]]:
        """Return `(endpoint, calls, total)` for events on or after `since`."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT endpoint, amount_usd FROM cost_event"
            params: list = []
            if since is not None:
                query += " WHERE day >= ?"
                params.append(since.isoformat())

            totals: dict = {}
            for endpoint, amount in conn.execute(query, params):
                calls, total = totals.get(endpoint, (0, Decimal("0")))
                totals[endpoint] = (calls + 1, total + Decimal(amount))
            return sorted(
                ((endpoint, calls, total) for endpoint, (calls, total) in totals.items()),
                key=lambda row: row[2],
                reverse=True
            )
        finally:
            conn.close()

    def sum_costs(self, since: Optional[date] = None) -> Decimal:
        """Sum of all cost events on or after `since` (all events if None)."""
        return sum(
            (total for _, _, total in self.costs_by_endpoint(since)),
            Decimal("0")
        )

    def prune_days(self, before: date) -> int:
        """Delete budget records strictly older than `before`.

        Cost events are kept for auditing.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM budget_day WHERE day < ?",
                (before.isoformat(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


class CacheRepository:
    """Persistent key/value store backing the response cache."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def fetch(self, key: str) -> Optional[CacheEntry]:
        """Load an entry by key.

        Raises:
            ValueError: If the stored value or timestamps cannot be decoded
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value, fetched_at, ttl FROM cache_entry WHERE key = ?",
                (key,)
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        try:
            return CacheEntry(
                key=key,
                value=json.loads(row[0]),
                fetched_at=float(row[1]),
                ttl=float(row[2])
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Unreadable cache entry {key}: {e}")

    def upsert(self, entry: CacheEntry) -> None:
        """Write an entry, replacing any existing one with the same key."""
        payload = json.dumps(entry.value)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO cache_entry (key, value, fetched_at, ttl)
                VALUES (?, ?, ?, ?)
            """, (entry.key, payload, entry.fetched_at, entry.ttl))
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM cache_entry WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def delete_expired(self, now: float) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM cache_entry WHERE fetched_at + ttl <= ?",
                (now,)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def clear(self) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM cache_entry")
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM cache_entry").fetchone()[0]
        finally:
            conn.close()
