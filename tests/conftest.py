"""
Shared fixtures: a controllable clock and throwaway SQLite stores.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from xint_guard.core.cache import ResponseCache
from xint_guard.core.ledger import BudgetLedger
from xint_guard.storage.repository import CacheRepository, LedgerRepository, initialize_schema


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.current = start
        self.sleeps = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def ledger(db_path, clock):
    return BudgetLedger(LedgerRepository(db_path), Decimal("1.00"), clock=clock)


@pytest.fixture
def cache(db_path, clock):
    return ResponseCache(CacheRepository(db_path), clock=clock)
