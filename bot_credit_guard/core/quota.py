"""
Quota enforcement and request metering.

The quota check is a read-only decision layered on the ledger. Its only
write is the lazy daily rollover, which it performs through the ledger's
own rollover routine so the two paths can never reset a day twice.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from bot_credit_guard.storage.models import CreditBalance
from .errors import BotApiError, InsufficientCredits, PersistenceError, QuotaExceeded
from .ledger import CreditLedger
from .metrics import MetricsRegistry
from .usage import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    """Outcome of an admitted quota check."""
    remaining_quota: int
    daily_limit: int
    usage_today: int
    credits_remaining: int
    reset_date: datetime


class QuotaEnforcer:
    """Decides whether a bot may issue another metered request today."""

    def __init__(self, ledger: CreditLedger, metrics: Optional[MetricsRegistry] = None):
        self.ledger = ledger
        self.metrics = metrics

    def check(self, bot_id: str) -> QuotaStatus:
        """Admit or reject a request against the daily quota.

        Returns:
            Remaining quota and balance for an admitted request

        Raises:
            QuotaExceeded: If no requests remain today; carries the reset date
            AccountNotFound: If the bot is unknown or deactivated
        """
        balance = self.ledger.rollover(bot_id)
        remaining = balance.daily_limit - balance.usage_today
        if remaining <= 0:
            if self.metrics is not None:
                self.metrics.quota_rejections.labels(reason="quota").inc()
            logger.warning("Bot %s rejected: daily limit of %d reached", bot_id, balance.daily_limit)
            raise QuotaExceeded(bot_id, balance.daily_limit, balance.reset_date)
        return QuotaStatus(
            remaining_quota=remaining,
            daily_limit=balance.daily_limit,
            usage_today=balance.usage_today,
            credits_remaining=balance.credits_remaining,
            reset_date=balance.reset_date,
        )


@dataclass
class MeterTicket:
    """Handle for one metered request; holds the balance once charged."""
    bot_id: str
    endpoint: str
    status: QuotaStatus
    balance: Optional[CreditBalance] = None


def error_kind(error: BaseException) -> str:
    if isinstance(error, BotApiError):
        return error.code
    return type(error).__name__


class Meter:
    """Wraps business logic in quota check, charge and usage recording.

    Order per request:
    1. Quota check (and an early empty-balance rejection) before any work
    2. Business logic
    3. Ledger charge - authoritative, may still reject if a concurrent
       request took the last credit
    4. Usage recording - best effort, never undoes the charge

    Work done in step 2 stays committed when step 3 rejects, so metered
    mutations are kept idempotent and safe to retry.
    """

    def __init__(self, quota: QuotaEnforcer, ledger: CreditLedger, recorder: UsageRecorder):
        self.quota = quota
        self.ledger = ledger
        self.recorder = recorder

    @contextmanager
    def track(self, bot_id: str, endpoint: str) -> Iterator[MeterTicket]:
        status = self.quota.check(bot_id)
        if status.credits_remaining <= 0:
            raise InsufficientCredits(bot_id, 0)

        ticket = MeterTicket(bot_id=bot_id, endpoint=endpoint, status=status)
        try:
            yield ticket
        except Exception as e:
            try:
                self._settle(ticket, succeeded=False, kind=error_kind(e))
            except BotApiError:
                logger.warning("Could not settle failed request for bot %s", bot_id, exc_info=True)
            raise
        self._settle(ticket, succeeded=True)

    def _settle(self, ticket: MeterTicket, succeeded: bool, kind: Optional[str] = None) -> None:
        ticket.balance = self.ledger.charge(ticket.bot_id, ticket.endpoint)
        try:
            self.recorder.record(ticket.bot_id, ticket.endpoint, succeeded, kind)
        except PersistenceError:
            logger.warning("Usage not recorded for bot %s on %s", ticket.bot_id, ticket.endpoint, exc_info=True)
