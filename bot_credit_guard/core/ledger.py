"""
Credit ledger.

Owns each bot's mutable balance row. Every read-check-write sequence runs
inside a ``BEGIN IMMEDIATE`` transaction, which holds the SQLite write lock
from the first read to the commit, and the decrement itself is a
conditional UPDATE whose affected-row count is checked. Two concurrent
charges against a balance of 1 therefore admit exactly one.

Enforcement Order for ``charge``:
1. Daily rollover - reset ``usage_today`` once the reset date has passed
2. Daily quota - reject when ``usage_today >= daily_limit``
3. Balance - reject when no credits remain
"""

import logging
import sqlite3
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from bot_credit_guard.storage.db import get_connection
from bot_credit_guard.storage.models import CreditBalance, Tier
from bot_credit_guard.storage.repository import BALANCE_COLUMNS, row_to_balance
from .errors import AccountNotFound, InsufficientCredits, PersistenceError, QuotaExceeded, ValidationError
from .metrics import MetricsRegistry
from .tiers import DEFAULT_TIER_TABLE, TierTable

logger = logging.getLogger(__name__)

# (bot_id, event_type, data) -> None; must not block
Notifier = Callable[[str, str, Dict[str, Any]], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_date(now: datetime) -> datetime:
    """Midnight (UTC) at the start of the day after ``now``."""
    tomorrow = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time(0, 0), tzinfo=timezone.utc)


class CreditLedger:
    """Per-bot balance mutations: charge, credit, rollover and tier limits."""

    def __init__(
        self,
        db_path: str,
        tiers: TierTable = DEFAULT_TIER_TABLE,
        low_balance_ratio: float = 0.1,
        notifier: Optional[Notifier] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.tiers = tiers
        self.low_balance_ratio = low_balance_ratio
        self.notifier = notifier
        self.metrics = metrics
        self.clock = clock

    def _load_and_roll(self, conn: sqlite3.Connection, bot_id: str, now: datetime) -> CreditBalance:
        """Read a balance inside an open transaction, rolling the day over if due.

        This is the only rollover routine; ``charge``, ``credit``, balance
        reads and the quota check all go through it. The UPDATE is
        conditional on the reset date just read, so a second caller after
        the same boundary finds nothing to reset.

        Raises:
            AccountNotFound: If the bot is unknown or deactivated
        """
        row = conn.execute(
            """
            SELECT b.bot_id, b.credits_remaining, b.total_purchased, b.total_used,
                   b.usage_today, b.daily_limit, b.reset_date
            FROM credit_balance b JOIN bot_account a ON a.id = b.bot_id
            WHERE b.bot_id = ? AND a.is_active = 1
            """,
            (bot_id,),
        ).fetchone()
        if row is None:
            raise AccountNotFound(bot_id)

        balance = row_to_balance(row)
        if now > balance.reset_date:
            new_reset = next_reset_date(now)
            cursor = conn.execute(
                """
                UPDATE credit_balance SET usage_today = 0, reset_date = ?
                WHERE bot_id = ? AND reset_date = ?
                """,
                (new_reset.isoformat(), bot_id, balance.reset_date.isoformat()),
            )
            if cursor.rowcount:
                logger.debug("Reset daily usage for bot %s until %s", bot_id, new_reset.isoformat())
                balance = CreditBalance(
                    bot_id=balance.bot_id,
                    credits_remaining=balance.credits_remaining,
                    total_purchased=balance.total_purchased,
                    total_used=balance.total_used,
                    usage_today=0,
                    daily_limit=balance.daily_limit,
                    reset_date=new_reset,
                )
        return balance

    def _read_after_write(self, conn: sqlite3.Connection, bot_id: str) -> CreditBalance:
        row = conn.execute(
            f"SELECT {BALANCE_COLUMNS} FROM credit_balance WHERE bot_id = ?", (bot_id,)
        ).fetchone()
        return row_to_balance(row)

    def rollover(self, bot_id: str) -> CreditBalance:
        """Apply any due daily reset and return the current balance."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            balance = self._load_and_roll(conn, bot_id, self.clock())
            conn.commit()
            return balance
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to read balance for {bot_id}: {e}") from e
        except AccountNotFound:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Balance reads are lazy rollover points too
    get_balance = rollover

    def charge(self, bot_id: str, endpoint: str) -> CreditBalance:
        """Deduct one credit for a metered request.

        Args:
            bot_id: Bot being charged
            endpoint: Endpoint name, used for metrics

        Returns:
            The balance after the charge

        Raises:
            AccountNotFound: If the bot is unknown or deactivated
            QuotaExceeded: If today's request ceiling is reached
            InsufficientCredits: If no credits remain
            PersistenceError: If the database fails
        """
        now = self.clock()
        conn = get_connection(self.db_path)
        rejection = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            balance = self._load_and_roll(conn, bot_id, now)

            if balance.usage_today >= balance.daily_limit:
                rejection = QuotaExceeded(bot_id, balance.daily_limit, balance.reset_date)
            elif balance.credits_remaining <= 0:
                rejection = InsufficientCredits(bot_id, 0)
            else:
                cursor = conn.execute(
                    """
                    UPDATE credit_balance
                    SET credits_remaining = MAX(credits_remaining - 1, 0),
                        usage_today = usage_today + 1,
                        total_used = total_used + 1
                    WHERE bot_id = ?
                      AND usage_today < daily_limit
                      AND credits_remaining > 0
                    """,
                    (bot_id,),
                )
                if cursor.rowcount != 1:
                    rejection = InsufficientCredits(bot_id, 0)
                else:
                    balance = self._read_after_write(conn, bot_id)

            # Commit even on rejection so a rollover done above sticks
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to charge bot {bot_id}: {e}") from e
        except AccountNotFound:
            conn.rollback()
            raise
        finally:
            conn.close()

        if rejection is not None:
            self._count_rejection(rejection)
            raise rejection

        logger.debug("Charged bot %s for %s, %d credits left", bot_id, endpoint, balance.credits_remaining)
        if self.metrics is not None:
            self.metrics.credits_used.labels(endpoint=endpoint).inc()
        self._check_low_balance(balance)
        return balance

    def credit(self, bot_id: str, amount: int) -> CreditBalance:
        """Add purchased credits. Never gated by the daily quota.

        Args:
            bot_id: Bot receiving the credits
            amount: Number of credits, must be > 0

        Returns:
            The balance after the credit

        Raises:
            ValidationError: If amount is not a positive integer
            AccountNotFound: If the bot is unknown or deactivated
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer", {"amount": amount})

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._load_and_roll(conn, bot_id, self.clock())
            conn.execute(
                """
                UPDATE credit_balance
                SET credits_remaining = credits_remaining + ?,
                    total_purchased = total_purchased + ?
                WHERE bot_id = ?
                """,
                (amount, amount, bot_id),
            )
            balance = self._read_after_write(conn, bot_id)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to credit bot {bot_id}: {e}") from e
        except AccountNotFound:
            conn.rollback()
            raise
        finally:
            conn.close()

        if self.metrics is not None:
            self.metrics.credits_purchased.inc(amount)
        self._check_low_balance(balance)
        return balance

    def set_daily_limit(self, bot_id: str, tier: Tier) -> CreditBalance:
        """Apply the tier table's daily limit to a bot's balance."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            balance = self.apply_daily_limit(conn, bot_id, tier)
            conn.commit()
            return balance
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to update daily limit for {bot_id}: {e}") from e
        except AccountNotFound:
            conn.rollback()
            raise
        finally:
            conn.close()

    def apply_daily_limit(self, conn: sqlite3.Connection, bot_id: str, tier: Tier) -> CreditBalance:
        """Apply the tier table's daily limit inside the caller's open transaction.

        Raises:
            AccountNotFound: If the bot is unknown or deactivated
        """
        self._load_and_roll(conn, bot_id, self.clock())
        conn.execute(
            "UPDATE credit_balance SET daily_limit = ? WHERE bot_id = ?",
            (self.tiers.daily_limit(tier), bot_id),
        )
        return self._read_after_write(conn, bot_id)

    def is_low(self, balance: CreditBalance) -> bool:
        """Whether a positive balance has dropped to the low-credit threshold."""
        return 0 < balance.credits_remaining <= balance.total_purchased * self.low_balance_ratio

    def _check_low_balance(self, balance: CreditBalance) -> None:
        if self.notifier is None or not self.is_low(balance):
            return
        try:
            self.notifier(balance.bot_id, "credit_update", {
                "creditsRemaining": balance.credits_remaining,
                "creditsLow": True,
                "usageToday": balance.usage_today,
                "dailyLimit": balance.daily_limit,
            })
        except Exception:
            # Notification is best effort; the charge is already committed
            logger.warning("Could not queue credit_update for bot %s", balance.bot_id, exc_info=True)

    def _count_rejection(self, error: Exception) -> None:
        if isinstance(error, QuotaExceeded):
            logger.warning("Bot %s exceeded its daily limit of %d", error.bot_id, error.daily_limit)
            reason = "quota"
        else:
            reason = "credits"
        if self.metrics is not None:
            self.metrics.quota_rejections.labels(reason=reason).inc()
