"""
Daily budget ledger and admission control.

Spend is governed in two phases:
1. `check_and_reserve` - admit a call against its estimated cost before it is made
2. `commit` - record the cost actually incurred once the call has succeeded

Reservations hold the estimate against today's headroom while the call is
in flight, so two callers in the same process cannot both be admitted
against the same remaining budget.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import date, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from itertools import count
from typing import Dict, List, Optional, Tuple

from .clock import SystemClock, utc_today
from .errors import PersistenceFailure
from xint_guard.storage.models import BudgetRecord, CostEvent
from xint_guard.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class SpendPeriod(Enum):
    """Reporting windows for `current_spend`, in UTC days including today."""
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"

    @property
    def days(self) -> Optional[int]:
        return {"today": 1, "week": 7, "month": 30, "all": None}[self.value]


@dataclass(frozen=True)
class Reservation:
    """Estimated cost held against today's budget until committed or released."""
    id: int
    day: date
    amount: Decimal
    endpoint: str


@dataclass(frozen=True)
class Admission:
    """Result of an admission check."""
    allowed: bool
    spent: Decimal
    limit: Decimal
    remaining: Decimal
    estimate: Decimal
    reservation: Optional[Reservation] = None


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot of today's budget."""
    date: date
    spent: Decimal
    limit: Decimal
    reserved: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(self.limit - self.spent - self.reserved, ZERO)


def _to_decimal(amount) -> Decimal:
    if isinstance(amount, Decimal):
        value = amount
    else:
        # str() keeps 0.05 as 0.05 instead of its binary float expansion
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Not a valid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Amount must be finite, got {amount!r}")
    return value


class BudgetLedger:
    """Persistent per-UTC-day spend accounting.

    The ledger is the only writer of budget records. Pass one instance by
    reference to every component that spends money.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        default_limit: Decimal,
        clock=None
    ):
        """Initialize the ledger.

        Args:
            repository: Persistent store for records and cost events
            default_limit: Limit for the first day ever recorded; later days
                carry forward the most recent explicit setting
            clock: Time source (defaults to the system clock)
        """
        default_limit = _to_decimal(default_limit)
        if default_limit < 0:
            raise ValueError("default_limit cannot be negative")

        self.repository = repository
        self.default_limit = default_limit
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._reservations: Dict[int, Reservation] = {}
        self._ids = count(1)

    def _today(self) -> date:
        return utc_today(self.clock)

    def _reserved(self, day: date) -> Decimal:
        return sum(
            (r.amount for r in self._reservations.values() if r.day == day),
            ZERO
        )

    def _load_day(self, day: date) -> BudgetRecord:
        try:
            return self.repository.get_or_create_day(day, self.default_limit)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read budget for {day}: {e}") from e

    def check_and_reserve(self, estimated_cost, endpoint: str = "unknown") -> Admission:
        """Admit a call if its estimate fits in today's remaining budget.

        Denied whenever `spent + reserved + estimate > limit` for the current
        UTC day. An allowed admission holds a reservation that must be passed
        to `commit` or `release`.

        Args:
            estimated_cost: Expected cost of the call
            endpoint: Endpoint or category the call is for

        Returns:
            Admission describing the decision and today's budget
        """
        estimate = _to_decimal(estimated_cost)
        if estimate < 0:
            raise ValueError("estimated_cost cannot be negative")

        with self._lock:
            day = self._today()
            record = self._load_day(day)
            reserved = self._reserved(day)
            committed_and_held = record.spent + reserved
            remaining = max(record.limit - committed_and_held, ZERO)

            if committed_and_held + estimate > record.limit:
                logger.info(
                    f"Denied {endpoint}: ${estimate} requested, "
                    f"${remaining} of ${record.limit} remaining"
                )
                return Admission(
                    allowed=False,
                    spent=record.spent,
                    limit=record.limit,
                    remaining=remaining,
                    estimate=estimate
                )

            reservation = Reservation(
                id=next(self._ids),
                day=day,
                amount=estimate,
                endpoint=endpoint
            )
            self._reservations[reservation.id] = reservation
            return Admission(
                allowed=True,
                spent=record.spent,
                limit=record.limit,
                remaining=remaining,
                estimate=estimate,
                reservation=reservation
            )

    def release(self, reservation: Optional[Reservation]) -> None:
        """Drop a reservation without recording spend."""
        if reservation is None:
            return
        with self._lock:
            self._reservations.pop(reservation.id, None)

    def commit(
        self,
        actual_cost,
        endpoint: str = "unknown",
        reservation: Optional[Reservation] = None
    ) -> CostEvent:
        """Record the cost of a call that has already succeeded.

        Always applied, even if it pushes spend past the limit: the money is
        already spent. The event and the new daily total are persisted in one
        transaction.

        Raises:
            PersistenceFailure: If the spend could not be recorded
        """
        amount = _to_decimal(actual_cost)
        if amount < 0:
            raise ValueError("actual_cost cannot be negative")

        event = CostEvent(
            timestamp=self.clock.now().astimezone(timezone.utc),
            endpoint=endpoint,
            amount=amount
        )
        with self._lock:
            try:
                record = self.repository.record_cost(event, self.default_limit)
            except sqlite3.Error as e:
                logger.error(f"Failed to record ${amount} for {endpoint}: {e}")
                raise PersistenceFailure(
                    f"Spend of ${amount} for {endpoint} was not recorded: {e}"
                ) from e
            finally:
                if reservation is not None:
                    self._reservations.pop(reservation.id, None)

        if record.spent > record.limit:
            logger.warning(
                f"Spend ${record.spent} is over the ${record.limit} limit "
                f"after {endpoint} cost ${amount}"
            )
        return event

    def current_spend(self, period: SpendPeriod = SpendPeriod.TODAY) -> Decimal:
        """Total committed spend in a reporting window, from the event log."""
        try:
            return self.repository.sum_costs(self._period_start(period))
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read cost events: {e}") from e

    def spend_by_endpoint(self, period: SpendPeriod = SpendPeriod.TODAY) -> List[Tuple[str, int, Decimal]]:
        """Per-endpoint `(endpoint, calls, total)` for a reporting window."""
        try:
            return self.repository.costs_by_endpoint(self._period_start(period))
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read cost events: {e}") from e

    def recent_events(self, period: SpendPeriod = SpendPeriod.TODAY, limit: int = 20) -> List[CostEvent]:
        """Newest cost events in a reporting window, from the audit log."""
        try:
            return self.repository.fetch_cost_events(self._period_start(period), limit)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read cost events: {e}") from e

    def _period_start(
self, period: SpendPeriod) -> Optional[date]:
        if period.days is None:
            return None
        return self._today() - timedelta(days=period.days - 1)

    def set_limit(self, amount) -> BudgetRecord:
        """Set today's limit; later days inherit it until changed again.

        Committed spend is untouched, so lowering the limit below today's
        spend simply denies further calls.
        """
        limit = _to_decimal(amount)
        if limit < 0:
            raise ValueError("limit cannot be negative")

        with self._lock:
            try:
                record = self.repository.set_limit(self._today(), limit, self.default_limit)
            except sqlite3.Error as e:
                raise PersistenceFailure(f"Could not persist limit ${limit}: {e}") from e
        logger.info(f"Daily limit set to ${limit}")
        return record

    def status(self) -> BudgetStatus:
        """Today's spend, limit and outstanding reservations."""
        with self._lock:
            day = self._today()
            record = self._load_day(day)
            return BudgetStatus(
                date=day,
                spent=record.spent,
                limit=record.limit,
                reserved=self._reserved(day)
            )

    def prune(self, keep_days: int) -> int:
        """Delete budget records older than `keep_days`; today's is always kept."""
        if keep_days < 1:
            raise ValueError("keep_days must be >= 1")
        today = self._today()
        cutoff = today - timedelta(days=keep_days - 1)
        # Materialize today's record first so its carried-forward limit survives
        self._load_day(today)
        try:
            return self.repository.prune_days(cutoff)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not prune budget records: {e}") from e
