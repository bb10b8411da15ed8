"""
Tests for the budget ledger.

Covers admission control, commit accounting, day rollover and reporting.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from xint_guard.core.errors import PersistenceFailure
from xint_guard.core.ledger import BudgetLedger, SpendPeriod
from xint_guard.storage.repository import LedgerRepository


class TestAdmission:
    """Test check_and_reserve decisions."""

    def test_allows_within_budget(self, ledger):
        """An estimate that fits is admitted with a reservation."""
        admission = ledger.check_and_reserve(Decimal("0.40"), "search_recent")

        assert admission.allowed
        assert admission.reservation is not None
        assert admission.limit == Decimal("1.00")
        assert admission.remaining == Decimal("1.00")

    def test_denies_when_estimate_exceeds_remaining(self, ledger):
        """spent + estimate > limit is always denied."""
        ledger.commit(Decimal("0.90"), "search_recent")

        admission = ledger.check_and_reserve(Decimal("0.11"))

        assert not admission.allowed
        assert admission.reservation is None
        assert admission.spent == Decimal("0.90")
        assert admission.remaining == Decimal("0.10")

    def test_exact_fit_is_allowed(self, ledger):
        """Spending exactly up to the limit is allowed."""
        ledger.commit(Decimal("0.95"))

        assert ledger.check_and_reserve(Decimal("0.05")).allowed

    def test_twenty_first_request_denied(self, ledger):
        """With a $1.00 limit and $0.05 calls, the 21st admission is denied."""
        for _ in range(20):
            admission = ledger.check_and_reserve(Decimal("0.05"), "search_recent")
            assert admission.allowed
            ledger.commit(Decimal("0.05"), "search_recent", admission.reservation)

        assert ledger.current_spend(SpendPeriod.TODAY) == Decimal("1.00")
        denied = ledger.check_and_reserve(Decimal("0.05"), "search_recent")
        assert not denied.allowed
        assert denied.remaining == Decimal("0")

    def test_outstanding_reservations_count_against_budget(self, ledger):
        """Two in-flight calls cannot both claim the same headroom."""
        first = ledger.check_and_reserve(Decimal("0.60"))
        second = ledger.check_and_reserve(Decimal("0.60"))

        assert first.allowed
        assert not second.allowed
        assert ledger.status().reserved == Decimal("0.60")

    def test_release_frees_reservation(self, ledger):
        """A released reservation returns its headroom."""
        first = ledger.check_and_reserve(Decimal("0.60"))
        ledger.release(first.reservation)

        assert ledger.check_and_reserve(Decimal("0.60")).allowed

    def test_commit_clears_reservation(self, ledger):
        """Committing replaces the estimate with the actual cost."""
        admission = ledger.check_and_reserve(Decimal("0.50"))
        ledger.commit(Decimal("0.10"), "search_recent", admission.reservation)

        status = ledger.status()
        assert status.reserved == Decimal("0")
        assert status.spent == Decimal("0.10")
        assert status.remaining == Decimal("0.90")

    def test_negative_estimate_rejected(self, ledger):
        with pytest.raises(ValueError, match="cannot be negative"):
            ledger.check_and_reserve(Decimal("-1"))


class TestCommit:
    """Test spend recording."""

    def test_current_spend_is_sum_of_commits(self, ledger):
        """Budget monotonicity: today's spend equals the committed total."""
        amounts = [Decimal("0.01"), Decimal("0.123456"), Decimal("0.2"), Decimal("0")]
        running = Decimal("0")
        for amount in amounts:
            ledger.commit(amount, "search_recent")
            running += amount
            assert ledger.current_spend() == running
            assert ledger.status().spent == running

    def test_commit_is_unconditional(self, ledger):
        """Actual cost above the limit is still recorded."""
        ledger.commit(Decimal("1.50"), "chat_completion")

        assert ledger.status().spent == Decimal("1.50")
        assert ledger.status().remaining == Decimal("0")
        assert not ledger.check_and_reserve(Decimal("0.01")).allowed

    def test_float_amounts_are_exact(self, ledger):
        """Floats are converted through their decimal string form."""
        for _ in range(3):
            ledger.commit(0.1)

        assert ledger.current_spend() == Decimal("0.3")

    def test_commit_returns_event(self, ledger, clock):
        event = ledger.commit(Decimal("0.25"), "user_lookup")

        assert event.endpoint == "user_lookup"
        assert event.amount == Decimal("0.25")
        assert event.timestamp == clock.now()

    def test_persistence_failure_is_raised(self, clock):
        """A failed write must surface, never pass silently."""
        repository = Mock(spec=LedgerRepository)
        repository.record_cost.side_effect = sqlite3.OperationalError("disk I/O error")
        ledger = BudgetLedger(repository, Decimal("1.00"), clock=clock)

        with pytest.raises(PersistenceFailure, match="was not recorded"):
            ledger.commit(Decimal("0.05"), "search_recent")

    def test_failed_commit_still_releases_reservation(self, clock):
        repository = Mock(spec=LedgerRepository)
        repository.get_or_create_day.return_value = Mock(spent=Decimal("0"), limit=Decimal("1.00"))
        repository.record_cost.side_effect = sqlite3.OperationalError("locked")
        ledger = BudgetLedger(repository, Decimal("1.00"), clock=clock)

        admission = ledger.check_and_reserve(Decimal("0.50"))
        with pytest.raises(PersistenceFailure):
            ledger.commit(Decimal("0.50"), reservation=admission.reservation)

        assert ledger.status().reserved == Decimal("0")

    def test_spend_persists_across_instances(self, db_path, clock):
        """A new process sees the spend recorded by an earlier one."""
        BudgetLedger(LedgerRepository(db_path), Decimal("1.00"), clock=clock).commit(Decimal("0.30"))

        other = BudgetLedger(LedgerRepository(db_path), Decimal("1.00"), clock=clock)
        assert other.status().spent == Decimal("0.30")


class TestDayRollover:
    """Test UTC day boundaries."""

    def test_new_day_starts_at_zero(self, ledger, clock):
        """A commit at 23:59:59 does not count against the next day."""
        clock.current = datetime(2024, 3, 1, 23, 59, 59, tzinfo=timezone.utc)
        ledger.commit(Decimal("0.90"), "search_recent")
        assert not ledger.check_and_reserve(Decimal("0.20")).allowed

        clock.current = datetime(2024, 3, 2, 0, 0, 1, tzinfo=timezone.utc)
        admission = ledger.check_and_reserve(Decimal("0.20"))

        assert admission.allowed
        assert admission.spent == Decimal("0")
        assert ledger.current_spend(SpendPeriod.TODAY) == Decimal("0")

    def test_limit_carries_forward(self, ledger, clock):
        """The most recent explicit limit applies to later days."""
        ledger.set_limit(Decimal("3.00"))
        clock.advance(3 * 86400)

        assert ledger.status().limit == Decimal("3.00")
        assert ledger.status().spent == Decimal("0")

    def test_rollover_uses_utc_date(self, ledger, clock):
        """Local offsets don't move the day boundary."""
        from datetime import timedelta
        eastern = timezone(timedelta(hours=-5))
        clock.current = datetime(2024, 3, 1, 20, 0, 0, tzinfo=eastern)  # 01:00 UTC on the 2nd

        assert ledger.status().date.isoformat() == "2024-03-02"


class TestSetLimit:
    """Test budget changes."""

    def test_effective_immediately(self, ledger):
        ledger.commit(Decimal("0.50"))
        ledger.set_limit(Decimal("0.40"))

        status = ledger.status()
        assert status.spent == Decimal("0.50")
        assert status.limit == Decimal("0.40")
        assert not ledger.check_and_reserve(Decimal("0.01")).allowed

    def test_raising_limit_admits_again(self, ledger):
        ledger.commit(Decimal("1.00"))
        ledger.set_limit(Decimal("2.00"))

        assert ledger.check_and_reserve(Decimal("0.99")).allowed

    def test_negative_limit_rejected(self, ledger):
        with pytest.raises(ValueError, match="cannot be negative"):
            ledger.set_limit(Decimal("-1"))

    @pytest.mark.parametrize("amount", ["NaN", "sNaN", "Infinity", "-Infinity"])
    def test_non_finite_limit_rejected(self, ledger, amount):
        """A non-finite limit would disable or break the cap."""
        with pytest.raises(ValueError, match="finite"):
            ledger.set_limit(amount)

        assert ledger.status().limit == Decimal("1.00")

    def test_unparseable_limit_rejected(self, ledger):
        with pytest.raises(ValueError, match="Not a valid amount"):
            ledger.set_limit("lots")

    def test_non_finite_estimate_rejected(self, ledger):
        with pytest.raises(ValueError, match="finite"):
            ledger.check_and_reserve(Decimal("Infinity"))


class TestReporting:
    """Test spend windows and breakdowns."""

    def test_periods(self, ledger, clock):
        """today / week / month / all sum the right days."""
        ledger.commit(Decimal("1.00"), "search_recent")   # day 0
        clock.advance(5 * 86400)
        ledger.commit(Decimal("0.50"), "search_recent")   # day 5
        clock.advance(10 * 86400)
        ledger.commit(Decimal("0.25"), "user_lookup")     # day 15
        clock.advance(20 * 86400)
        ledger.commit(Decimal("0.10"), "user_lookup")     # day 35

        assert ledger.current_spend(SpendPeriod.TODAY) == Decimal("0.10")
        assert ledger.current_spend(SpendPeriod.WEEK) == Decimal("0.10")
        assert ledger.current_spend(SpendPeriod.MONTH) == Decimal("0.35")
        assert ledger.current_spend(SpendPeriod.ALL) == Decimal("1.85")

    def test_week_includes_six_days_ago(self, ledger, clock):
        ledger.commit(Decimal("0.20"))
        clock.advance(6 * 86400)

        assert ledger.current_spend(SpendPeriod.WEEK) == Decimal("0.20")
        clock.advance(86400)
        assert ledger.current_spend(SpendPeriod.WEEK) == Decimal("0")

    def test_spend_by_endpoint(self, ledger):
        ledger.commit(Decimal("0.05"), "search_recent")
        ledger.commit(Decimal("0.05"), "search_recent")
        ledger.commit(Decimal("0.02"), "user_lookup")

        rows = ledger.spend_by_endpoint(SpendPeriod.TODAY)

        assert rows == [
            ("search_recent", 2, Decimal("0.10")),
            ("user_lookup", 1, Decimal("0.02")),
        ]

    def test_recent_events_newest_first(self, ledger, clock):
        ledger.commit(Decimal("0.05"), "search_recent")
        clock.advance(60)
        ledger.commit(Decimal("0.02"), "user_lookup")
        clock.advance(86400)
        ledger.commit(Decimal("0.01"), "trends")

        today = ledger.recent_events(SpendPeriod.TODAY)
        week = ledger.recent_events(SpendPeriod.WEEK, limit=2)

        assert [e.endpoint for e in today] == ["trends"]
        assert [e.endpoint for e in week] == ["trends", "user_lookup"]
        assert week[1].amount == Decimal("0.02")


class TestPrune:
    """Test budget record pruning."""

    def test_prune_keeps_current_day_and_limit(self, ledger, clock):
        ledger.set_limit(Decimal("4.00"))
        ledger.commit(Decimal("0.50"))
        clock.advance(100 * 86400)

        removed = ledger.prune(keep_days=30)

        assert removed == 1
        assert ledger.status().limit == Decimal("4.00")
        assert ledger.current_spend(SpendPeriod.ALL) == Decimal("0.50")

    def test_prune_never_touches_today(self, ledger):
        ledger.commit(Decimal("0.50"))

        ledger.prune(keep_days=1)

        assert ledger.status().spent == Decimal("0.50")
