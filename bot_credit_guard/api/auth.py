"""
Caller authentication and the sandbox account.

``X-API-Key`` identifies a real bot; ``X-Bot-ID``, when sent, must name the
same bot. ``X-Sandbox-Mode: true`` skips the account store entirely and
substitutes a synthetic account whose state is never persisted.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from bot_credit_guard.config.loader import SandboxConfig
from bot_credit_guard.core.accounts import MAX_NAME_LENGTH, MIN_NAME_LENGTH, AccountStore
from bot_credit_guard.core.errors import InvalidApiKey, SubscriptionNotFound, ValidationError
from bot_credit_guard.core.ledger import next_reset_date
from bot_credit_guard.storage.models import BotAccount, CreditBalance, Tier, UsageRecord
from bot_credit_guard.webhooks.registry import parse_event_type, validate_url

SANDBOX_BOT_ID = "sandbox-bot-demo"
SANDBOX_HEADER = "X-Sandbox-Mode"
_TRUTHY = {"true", "1", "yes", "on"}


def is_sandbox(header_value: Optional[str]) -> bool:
    return (header_value or "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Caller:
    """The authenticated bot behind a request."""
    bot_id: str
    account: Optional[BotAccount] = None
    sandbox: bool = False


def authenticate(
    accounts: AccountStore,
    api_key: Optional[str],
    bot_id: Optional[str],
    sandbox_mode: Optional[str],
) -> Caller:
    """Resolve request headers to a caller.

    Raises:
        InvalidApiKey: If the key is missing, unknown, or belongs to another bot
    """
    if is_sandbox(sandbox_mode):
        return Caller(bot_id=SANDBOX_BOT_ID, sandbox=True)
    if not api_key:
        raise InvalidApiKey("Missing API key")
    account = accounts.verify(api_key)
    if account is None:
        raise InvalidApiKey()
    if bot_id and bot_id != account.id:
        raise InvalidApiKey("API key does not belong to the given bot")
    return Caller(bot_id=account.id, account=account)


class SandboxSession:
    """Synthetic responses for sandbox callers. Writes nothing anywhere."""

    def __init__(self, config: SandboxConfig):
        self.config = config

    def account(self, now: datetime) -> BotAccount:
        return BotAccount(
            id=SANDBOX_BOT_ID,
            name="Sandbox Demo Bot",
            tier=Tier.PREMIUM,
            is_active=True,
            api_key_hash="",
            hmac_secret="",
            created_at=now,
        )

    def balance(self, now: datetime) -> CreditBalance:
        return CreditBalance(
            bot_id=SANDBOX_BOT_ID,
            credits_remaining=self.config.credits,
            total_purchased=self.config.credits,
            total_used=0,
            usage_today=0,
            daily_limit=self.config.daily_limit,
            reset_date=next_reset_date(now),
        )

    def create_bot(self, name: str, tier: str, now: datetime) -> Dict[str, Any]:
        name = name.strip()
        if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters"
            )
        return {
            "id": f"sandbox-bot-{uuid.uuid4().hex[:12]}",
            "name": name,
            "tier": tier,
            "apiKey": "bot_sandbox",
            "createdAt": now.isoformat(),
        }

    def usage(self, now: datetime) -> UsageRecord:
        return UsageRecord(bot_id=SANDBOX_BOT_ID, date=now.date())

    def purchase(self, amount: int, price_per_credit: float, now: datetime) -> Dict[str, Any]:
        invoice_id = f"sandbox-inv-{uuid.uuid4().hex[:12]}"
        return {
            "success": True,
            "invoice": {
                "id": invoice_id,
                "botId": SANDBOX_BOT_ID,
                "amount": amount,
                "pricePerCredit": price_per_credit,
                "totalPrice": round(amount * price_per_credit, 6),
                "status": "paid",
                "createdAt": now.isoformat(),
            },
            "creditsRemaining": self.config.credits + amount,
        }

    def register_webhook(self, url: str, event_type: str, description: Optional[str],
                         now: datetime) -> Dict[str, Any]:
        return {
            "id": f"sandbox-wh-{uuid.uuid4().hex[:12]}",
            "url": validate_url(url),
            "eventType": parse_event_type(event_type).value,
            "isActive": True,
            "description": description,
            "failureCount": 0,
            "lastTriggeredAt": None,
            "lastFailureAt": None,
            "lastFailureMessage": None,
            "createdAt": now.isoformat(),
        }

    def test_webhook(self, subscription_id: str) -> Dict[str, Any]:
        if not subscription_id.startswith("sandbox-wh-"):
            raise SubscriptionNotFound(subscription_id)
        return {
            "webhookId": subscription_id,
            "url": None,
            "eventId": f"evt_test_sandbox_{uuid.uuid4().hex[:12]}",
            "success": True,
            "statusCode": 200,
            "responseBody": None,
            "error": None,
        }
