"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class Tier(Enum):
    """Quota and pricing class of a bot."""
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class WebhookEventType(Enum):
    """Event types a subscription can filter on."""
    ALL = "all"
    PURCHASE = "purchase"
    USAGE = "usage"
    CREDIT_UPDATE = "credit_update"
    ERROR = "error"


class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class BotAccount:
    """Identity and credentials of a metered bot.

    Only the salted hash of the API key is kept. The plaintext key exists
    once, in the result of account creation or key rotation.
    """
    id: str
    name: str
    tier: Tier
    is_active: bool
    api_key_hash: str
    hmac_secret: str
    created_at: datetime
    last_api_key_rotated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tier": self.tier.value,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "lastApiKeyRotatedAt": _iso(self.last_api_key_rotated_at),
        }


@dataclass(frozen=True)
class CreditBalance:
    """Snapshot of one bot's mutable balance row."""
    bot_id: str
    credits_remaining: int
    total_purchased: int
    total_used: int
    usage_today: int
    daily_limit: int
    reset_date: datetime

    def __post_init__(self):
        """Validate balance counters."""
        if self.credits_remaining < 0:
            raise ValueError("credits_remaining cannot be negative")
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")

    @property
    def remaining_quota(self) -> int:
        return max(self.daily_limit - self.usage_today, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creditsRemaining": self.credits_remaining,
            "totalCreditsPurchased": self.total_purchased,
            "totalCreditsUsed": self.total_used,
            "creditsUsedToday": self.usage_today,
            "dailyLimit": self.daily_limit,
            "resetDate": _iso(self.reset_date),
        }


@dataclass(frozen=True)
class UsageRecord:
    """Per-day usage aggregate for one bot.

    Rows are incremented during their calendar day (UTC) and never touched
    once the day has passed.
    """
    bot_id: str
    date: date
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    credits_used: int = 0
    endpoint_breakdown: Dict[str, int] = field(default_factory=dict)
    error_breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "requests": self.request_count,
            "successes": self.success_count,
            "errors": self.error_count,
            "creditsUsed": self.credits_used,
            "endpointBreakdown": dict(self.endpoint_breakdown),
            "errorBreakdown": dict(self.error_breakdown),
        }


@dataclass(frozen=True)
class WebhookSubscription:
    """Registered delivery target for one bot's events."""
    id: str
    bot_id: str
    url: str
    event_type: WebhookEventType
    is_active: bool = True
    description: Optional[str] = None
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_failure_message: Optional[str] = None
    created_at: Optional[datetime] = None

    def matches(self, event_type: str) -> bool:
        """Whether an event of the given type should be delivered here."""
        return self.event_type == WebhookEventType.ALL or self.event_type.value == event_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "eventType": self.event_type.value,
            "isActive": self.is_active,
            "description": self.description,
            "failureCount": self.failure_count,
            "lastTriggeredAt": _iso(self.last_triggered_at),
            "lastFailureAt": _iso(self.last_failure_at),
            "lastFailureMessage": self.last_failure_message,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Invoice:
    """Record of one credit purchase."""
    id: str
    bot_id: str
    amount: int
    price_per_credit: float
    total_price: float
    status: InvoiceStatus
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "botId": self.bot_id,
            "amount": self.amount,
            "pricePerCredit": self.price_per_credit,
            "totalPrice": self.total_price,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
        }
