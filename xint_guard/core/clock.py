"""
Time source used by the ledger and cache.

Everything that depends on "now" takes a clock so day rollover and TTL
expiry can be driven without waiting on the wall clock.
"""

from datetime import date, datetime, timezone


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def utc_today(clock) -> date:
    """Current UTC calendar day according to `clock`."""
    return clock.now().astimezone(timezone.utc).date()
