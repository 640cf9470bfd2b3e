"""
Error taxonomy for the ledger, quota and webhook subsystems.

Every error carries a stable machine-readable code so HTTP callers can
branch on it without parsing messages.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class BotApiError(Exception):
    """Base class for all domain errors."""
    code = "SERVER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AccountNotFound(BotApiError):
    code = "BOT_NOT_FOUND"

    def __init__(self, bot_id: str):
        super().__init__(f"Bot not found: {bot_id}")
        self.bot_id = bot_id


class InvalidApiKey(BotApiError):
    code = "INVALID_API_KEY"

    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message)


class InsufficientCredits(BotApiError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, bot_id: str, credits_remaining: int = 0):
        super().__init__(
            "Insufficient credits. Purchase more credits to continue using the API",
            {"creditsRemaining": credits_remaining},
        )
        self.bot_id = bot_id
        self.credits_remaining = credits_remaining


class QuotaExceeded(BotApiError):
    """Daily request ceiling reached; carries what a client needs to back off."""
    code = "QUOTA_EXCEEDED"

    def __init__(self, bot_id: str, daily_limit: int, reset_date: datetime):
        super().__init__(
            f"Daily usage limit of {daily_limit} requests exceeded",
            {"dailyLimit": daily_limit, "resetDate": reset_date.isoformat()},
        )
        self.bot_id = bot_id
        self.daily_limit = daily_limit
        self.reset_date = reset_date

    def retry_after(self, now: datetime) -> int:
        """Whole seconds until the quota window resets (never negative)."""
        return max(int((self.reset_date - now).total_seconds()) + 1, 0)


class InvalidWebhookUrl(BotApiError):
    code = "INVALID_WEBHOOK_URL"

    def __init__(self, url: str):
        super().__init__(f"Invalid webhook URL: {url!r}")
        self.url = url


class InvalidEventType(BotApiError):
    code = "INVALID_EVENT_TYPE"

    def __init__(self, event_type: str, valid: Optional[list] = None):
        super().__init__(
            f"Invalid event type: {event_type!r}",
            {"validEventTypes": valid or []},
        )
        self.event_type = event_type


class SubscriptionNotFound(BotApiError):
    code = "WEBHOOK_NOT_FOUND"

    def __init__(self, subscription_id: str):
        super().__init__(f"Webhook not found: {subscription_id}")
        self.subscription_id = subscription_id


class InvoiceNotFound(BotApiError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice not found: {invoice_id}")
        self.invoice_id = invoice_id


class WebhookDeliveryFailed(BotApiError):
    """A delivery attempt got no HTTP response.

    Only ever raised to the caller of a synchronous test dispatch; event
    deliveries fold it into the subscription's failure counters instead.
    """
    code = "WEBHOOK_DELIVERY_FAILED"

    def __init__(self, subscription_id: str, reason: str):
        super().__init__(f"Failed to deliver webhook: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason


class ValidationError(BotApiError):
    code = "VALIDATION_ERROR"


class PersistenceError(BotApiError):
    code = "SERVER_ERROR"
