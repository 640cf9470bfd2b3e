"""
Usage recording and reporting.

Keeps one aggregate row per (bot, UTC calendar day). Usage statistics are
best-effort telemetry: the ledger, not this table, is the billing source
of truth.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from bot_credit_guard.storage.models import UsageRecord
from bot_credit_guard.storage.repository import UsageRepository, days_back, merge_breakdowns
from .errors import ValidationError
from .ledger import utc_now

MAX_HISTORY_DAYS = 365
SUMMARY_DAYS = 30


@dataclass(frozen=True)
class UsageSummary:
    """Totals over a window of daily usage records."""
    days: int
    total_requests: int
    total_successes: int
    total_errors: int
    total_credits_used: int

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_successes / self.total_requests

    def to_dict(self) -> Dict[str, float]:
        return {
            "days": self.days,
            "totalRequests": self.total_requests,
            "totalSuccesses": self.total_successes,
            "totalErrors": self.total_errors,
            "totalCreditsUsed": self.total_credits_used,
            "successRate": self.success_rate,
        }


class UsageRecorder:
    """Upserts and queries per-day usage aggregates."""

    def __init__(self, repository: UsageRepository, clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.clock = clock

    def _today(self) -> date:
        return self.clock().date()

    def record(
        self,
        bot_id: str,
        endpoint: str,
        succeeded: bool,
        error_kind: Optional[str] = None,
    ) -> UsageRecord:
        """Count one request against today's aggregate.

        Raises:
            PersistenceError: If the write fails
        """
        return self.repository.increment(
            bot_id=bot_id,
            day=self._today(),
            endpoint=endpoint,
            succeeded=succeeded,
            error_kind=error_kind,
        )

    def today(self, bot_id: str) -> UsageRecord:
        """Today's aggregate, or an empty one before the first request of the day."""
        day = self._today()
        return self.repository.get_day(bot_id, day) or UsageRecord(bot_id=bot_id, date=day)

    def history(self, bot_id: str, days: int = 7) -> List[UsageRecord]:
        """Records for the last ``days`` days including today, newest first.

        Raises:
            ValidationError: If days is outside 1..365
        """
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_HISTORY_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_HISTORY_DAYS}", {"days": days})
        today = self._today()
        return self.repository.get_range(bot_id, days_back(today, days), today)

    def endpoint_totals(self, bot_id: str, days: int = SUMMARY_DAYS) -> Dict[str, int]:
        return merge_breakdowns(self.history(bot_id, days))

    def summary(self, bot_id: str, days: int = SUMMARY_DAYS) -> UsageSummary:
        records = self.history(bot_id, days)
        return UsageSummary(
            days=days,
            total_requests=sum(r.request_count for r in records),
            total_successes=sum(r.success_count for r in records),
            total_errors=sum(r.error_count for r in records),
            total_credits_used=sum(r.credits_used for r in records),
        )
