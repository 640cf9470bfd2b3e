"""
Webhook subscription registry.

Validates and stores delivery targets per bot. Re-registering a URL a bot
already has updates that subscription in place instead of adding a second
one.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import urlparse

from bot_credit_guard.core.accounts import AccountStore
from bot_credit_guard.core.errors import (
    AccountNotFound,
    InvalidEventType,
    InvalidWebhookUrl,
    SubscriptionNotFound,
)
from bot_credit_guard.core.ledger import utc_now
from bot_credit_guard.storage.models import WebhookEventType, WebhookSubscription
from bot_credit_guard.storage.repository import WebhookRepository

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
MAX_URL_LENGTH = 2048


def validate_url(url: str) -> str:
    """Return the URL if it is a well-formed absolute http(s) URL.

    Raises:
        InvalidWebhookUrl: Otherwise
    """
    if not isinstance(url, str) or not url.strip() or len(url) > MAX_URL_LENGTH:
        raise InvalidWebhookUrl(str(url))
    url = url.strip()
    try:
        parsed = urlparse(url)
        # Accessing .port validates it
        parsed.port
    except ValueError:
        raise InvalidWebhookUrl(url)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.hostname:
        raise InvalidWebhookUrl(url)
    if any(ch.isspace() for ch in url):
        raise InvalidWebhookUrl(url)
    return url


def parse_event_type(value) -> WebhookEventType:
    """Convert an event type name to the enumeration.

    Raises:
        InvalidEventType: If the name is not a subscribable event type
    """
    if isinstance(value, WebhookEventType):
        return value
    try:
        return WebhookEventType(str(value).strip().lower())
    except ValueError:
        raise InvalidEventType(str(value), [t.value for t in WebhookEventType])


class WebhookRegistry:
    """Owns the set of webhook subscriptions for every bot."""

    def __init__(
        self,
        repository: WebhookRepository,
        accounts: AccountStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.accounts = accounts
        self.clock = clock

    def register(
        self,
        bot_id: str,
        url: str,
        event_type=WebhookEventType.ALL,
        description: Optional[str] = None,
    ) -> WebhookSubscription:
        """Create or update the subscription for (bot, url).

        Raises:
            InvalidWebhookUrl: If the URL is malformed
            InvalidEventType: If the event type is unknown
            AccountNotFound: If the bot is unknown or inactive
        """
        url = validate_url(url)
        event_type = parse_event_type(event_type)
        if self.accounts.get(bot_id) is None:
            raise AccountNotFound(bot_id)

        subscription = self.repository.upsert(bot_id, url, event_type, description, self.clock())
        logger.info("Registered webhook %s for bot %s (%s)", subscription.id, bot_id, event_type.value)
        return subscription

    def list(self, bot_id: str) -> List[WebhookSubscription]:
        return self.repository.list_active(bot_id)

    def get(self, bot_id: str, subscription_id: str) -> WebhookSubscription:
        subscription = self.repository.get(subscription_id, bot_id=bot_id)
        if subscription is None or not subscription.is_active:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def delete(self, bot_id: str, subscription_id: str) -> None:
        if not self.repository.delete(subscription_id, bot_id):
            raise SubscriptionNotFound(subscription_id)
        logger.info("Deleted webhook %s for bot %s", subscription_id, bot_id)

    def matching(self, bot_id: str, event_type: str) -> List[WebhookSubscription]:
        """Active subscriptions that want events of this type."""
        return [s for s in self.repository.list_active(bot_id) if s.matches(event_type)]

    def record_success(self, subscription_id: str, when: datetime) -> None:
        self.repository.record_success(subscription_id, when)

    def record_failure(self, subscription_id: str, when: datetime, message: str) -> None:
        self.repository.record_failure(subscription_id, when, message)
