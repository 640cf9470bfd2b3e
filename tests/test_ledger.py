"""
Unit tests for the credit ledger.

Tests charging, crediting, the daily rollover, concurrent charges and the
low-balance notification.
"""

import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from bot_credit_guard.core.accounts import AccountStore
from bot_credit_guard.core.errors import (
    AccountNotFound,
    InsufficientCredits,
    QuotaExceeded,
    ValidationError,
)
from bot_credit_guard.core.ledger import CreditLedger, next_reset_date
from bot_credit_guard.core.metrics import MetricsRegistry
from bot_credit_guard.storage.db import get_connection
from bot_credit_guard.storage.models import Tier
from bot_credit_guard.storage.repository import initialize_schema

START = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the ledger and account store."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def set_balance(db_path: str, bot_id: str, **columns) -> None:
    assignments = ", ".join(f"{name} = ?" for name in columns)
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"UPDATE credit_balance SET {assignments} WHERE bot_id = ?",
            (*columns.values(), bot_id),
        )
        conn.commit()
    finally:
        conn.close()


class LedgerTestCase:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")
        initialize_schema(self.db_path)
        self.clock = FakeClock()
        self.metrics = MetricsRegistry()
        self.ledger = CreditLedger(self.db_path, metrics=self.metrics, clock=self.clock)
        self.accounts = AccountStore(self.db_path, self.ledger, clock=self.clock)
        self.bot_id = self.accounts.create_account("Ledger Bot").account.id

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestNextResetDate:
    def test_next_midnight_utc(self):
        assert next_reset_date(START) == datetime(2024, 3, 11, tzinfo=timezone.utc)

    def test_exact_midnight_moves_a_full_day(self):
        midnight = datetime(2024, 3, 11, tzinfo=timezone.utc)
        assert next_reset_date(midnight) == datetime(2024, 3, 12, tzinfo=timezone.utc)


class TestCharge(LedgerTestCase):
    """Test single-credit charges."""

    def test_new_free_bot_starts_from_tier_defaults(self):
        balance = self.ledger.get_balance(self.bot_id)
        assert balance.credits_remaining == 100
        assert balance.daily_limit == 100
        assert balance.total_purchased == 0
        assert balance.usage_today == 0
        assert balance.reset_date == datetime(2024, 3, 11, tzinfo=timezone.utc)

    def test_charge_deducts_one_credit(self):
        balance = self.ledger.charge(self.bot_id, "usage")

        assert balance.credits_remaining == 99
        assert balance.usage_today == 1
        assert balance.total_used == 1

    def test_insufficient_credits(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=0)

        with pytest.raises(InsufficientCredits) as exc_info:
            self.ledger.charge(self.bot_id, "usage")

        assert exc_info.value.details == {"creditsRemaining": 0}
        balance = self.ledger.get_balance(self.bot_id)
        assert balance.credits_remaining == 0
        assert balance.usage_today == 0

    def test_quota_checked_before_balance(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=0, usage_today=100)

        with pytest.raises(QuotaExceeded):
            self.ledger.charge(self.bot_id, "usage")

    def test_free_tier_last_request_of_the_day(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=5, usage_today=99)

        balance = self.ledger.charge(self.bot_id, "usage")
        assert balance.credits_remaining == 4
        assert balance.usage_today == 100

        with pytest.raises(QuotaExceeded) as exc_info:
            self.ledger.charge(self.bot_id, "usage")
        assert exc_info.value.reset_date == datetime(2024, 3, 11, tzinfo=timezone.utc)
        assert exc_info.value.retry_after(START) == 12 * 3600 + 1

        balance = self.ledger.get_balance(self.bot_id)
        assert balance.credits_remaining == 4
        assert balance.usage_today == 100

    def test_unknown_bot(self):
        with pytest.raises(AccountNotFound):
            self.ledger.charge("missing", "usage")

    def test_deactivated_bot_cannot_be_charged(self):
        self.accounts.deactivate(self.bot_id)
        with pytest.raises(AccountNotFound):
            self.ledger.charge(self.bot_id, "usage")

    def test_rejections_are_counted(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=0)
        with pytest.raises(InsufficientCredits):
            self.ledger.charge(self.bot_id, "usage")

        value = self.metrics.registry.get_sample_value(
            "bot_api_quota_rejections_total", {"reason": "credits"})
        assert value == 1.0


class TestCredit(LedgerTestCase):
    """Test purchased credits."""

    def test_credit_adds_to_balance_and_total(self):
        balance = self.ledger.credit(self.bot_id, 250)
        assert balance.credits_remaining == 350
        assert balance.total_purchased == 250

    def test_credit_not_gated_by_quota(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=0, usage_today=100)

        balance = self.ledger.credit(self.bot_id, 10)

        assert balance.credits_remaining == 10
        assert balance.usage_today == 100

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.ledger.credit(self.bot_id, amount)

    def test_credit_unknown_bot(self):
        with pytest.raises(AccountNotFound):
            self.ledger.credit("missing", 10)


class TestRollover(LedgerTestCase):
    """Test the lazy daily reset."""

    def test_rollover_resets_usage_once(self):
        set_balance(self.db_path, self.bot_id, usage_today=100)
        self.clock.advance(days=1)

        first = self.ledger.charge(self.bot_id, "usage")
        second = self.ledger.charge(self.bot_id, "usage")

        assert first.usage_today == 1
        assert second.usage_today == 2
        assert first.reset_date == second.reset_date == datetime(2024, 3, 12, tzinfo=timezone.utc)

    def test_rollover_is_idempotent_on_reads(self):
        set_balance(self.db_path, self.bot_id, usage_today=42)
        self.clock.advance(days=3)

        first = self.ledger.rollover(self.bot_id)
        second = self.ledger.rollover(self.bot_id)

        assert first == second
        assert first.usage_today == 0
        assert first.reset_date == datetime(2024, 3, 14, tzinfo=timezone.utc)

    def test_no_reset_before_boundary(self):
        set_balance(self.db_path, self.bot_id, usage_today=7)
        self.clock.advance(hours=11, minutes=59)

        assert self.ledger.get_balance(self.bot_id).usage_today == 7

    def test_rollover_keeps_credits(self):
        self.ledger.charge(self.bot_id, "usage")
        self.clock.advance(days=1)

        balance = self.ledger.get_balance(self.bot_id)
        assert balance.credits_remaining == 99
        assert balance.total_used == 1

    def test_tier_change_updates_daily_limit(self):
        self.accounts.set_tier(self.bot_id, Tier.ENTERPRISE)
        assert self.ledger.get_balance(self.bot_id).daily_limit == 100000

    def test_set_daily_limit_from_tier_table(self):
        balance = self.ledger.set_daily_limit(self.bot_id, Tier.PREMIUM)

        assert balance.daily_limit == 10000
        assert balance.credits_remaining == 100
        with pytest.raises(AccountNotFound):
            self.ledger.set_daily_limit("missing", Tier.PREMIUM)


class TestConcurrentCharges(LedgerTestCase):
    """Concurrent charges never overdraw a balance."""

    def test_exactly_k_of_n_succeed(self):
        credits, attempts = 5, 20
        set_balance(self.db_path, self.bot_id, credits_remaining=credits)
        start = threading.Barrier(attempts)

        def attempt(_):
            start.wait()
            try:
                self.ledger.charge(self.bot_id, "usage")
                return "ok"
            except InsufficientCredits:
                return "insufficient"

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            outcomes = list(pool.map(attempt, range(attempts)))

        assert outcomes.count("ok") == credits
        assert outcomes.count("insufficient") == attempts - credits
        balance = self.ledger.get_balance(self.bot_id)
        assert balance.credits_remaining == 0
        assert balance.usage_today == credits

    def test_two_charges_against_one_credit(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=1)
        start = threading.Barrier(2)
        results = []

        def attempt():
            start.wait()
            try:
                self.ledger.charge(self.bot_id, "usage")
                results.append("ok")
            except InsufficientCredits:
                results.append("insufficient")

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ["insufficient", "ok"]


class TestLowBalanceNotification(LedgerTestCase):
    """Test the credit_update event."""

    def setup_method(self):
        super().setup_method()
        self.notifier = Mock()
        self.ledger.notifier = self.notifier

    def test_no_event_above_threshold(self):
        self.ledger.credit(self.bot_id, 100)
        self.notifier.reset_mock()

        self.ledger.charge(self.bot_id, "usage")

        self.notifier.assert_not_called()

    def test_event_when_balance_drops_to_threshold(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=11, total_purchased=100)

        self.ledger.charge(self.bot_id, "usage")

        self.notifier.assert_called_once_with(self.bot_id, "credit_update", {
            "creditsRemaining": 10,
            "creditsLow": True,
            "usageToday": 1,
            "dailyLimit": 100,
        })

    def test_no_event_at_zero(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=1, total_purchased=100)

        self.ledger.charge(self.bot_id, "usage")

        self.notifier.assert_not_called()

    def test_never_purchased_is_never_low(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=2)
        self.ledger.charge(self.bot_id, "usage")
        self.notifier.assert_not_called()

    def test_notifier_failure_does_not_undo_charge(self):
        set_balance(self.db_path, self.bot_id, credits_remaining=5, total_purchased=100)
        self.notifier.side_effect = RuntimeError("queue closed")

        balance = self.ledger.charge(self.bot_id, "usage")

        assert balance.credits_remaining == 4
        assert self.ledger.get_balance(self.bot_id).credits_remaining == 4
