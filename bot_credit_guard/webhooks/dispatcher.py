"""
Webhook dispatch.

Events are put on a queue and delivered by a fixed pool of worker threads,
so the request that triggered an event never waits on a third-party URL.
A worker that takes an event fans it out into one delivery job per
matching subscription; deliveries for one event then proceed in parallel
and fail independently.

Each delivery is a single POST bounded by the configured timeout, which
covers reading the response body too; at most MAX_RESPONSE_BODY bytes of it
are kept. Any HTTP response counts as delivered. Timeouts and connection
errors are recorded on the subscription and never retried.
"""

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from bot_credit_guard.core.accounts import AccountStore
from bot_credit_guard.core.errors import AccountNotFound, PersistenceError
from bot_credit_guard.core.ledger import utc_now
from bot_credit_guard.core.metrics import MetricsRegistry
from bot_credit_guard.storage.models import WebhookSubscription
from .registry import WebhookRegistry
from .signing import (
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    serialize_envelope,
    sign,
)

logger = logging.getLogger(__name__)

TEST_EVENT_TYPE = "test"
USER_AGENT = "bot-credit-guard-webhooks/1.0"
MAX_FAILURE_MESSAGE = 500
MAX_RESPONSE_BODY = 4096


@dataclass(frozen=True)
class WebhookEvent:
    """One event instance. Built per dispatch and never stored."""
    id: str
    event: str
    bot_id: str
    timestamp: datetime
    data: Dict[str, Any]

    @classmethod
    def create(cls, event_type: str, bot_id: str, data: Dict[str, Any], now: datetime) -> "WebhookEvent":
        prefix = "evt_test_" if event_type == TEST_EVENT_TYPE else "evt_"
        return cls(
            id=f"{prefix}{uuid.uuid4().hex}",
            event=event_type,
            bot_id=bot_id,
            timestamp=now,
            data=dict(data),
        )

    def envelope(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "botId": self.bot_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass(frozen=True)
class DeliveryResult:
    """Transport outcome of one delivery attempt."""
    subscription_id: str
    url: str
    event_id: str
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webhookId": self.subscription_id,
            "url": self.url,
            "eventId": self.event_id,
            "success": self.success,
            "statusCode": self.status_code,
            "responseBody": self.response_body,
            "error": self.error,
        }


@dataclass(frozen=True)
class _EventJob:
    event: WebhookEvent


@dataclass(frozen=True)
class _DeliveryJob:
    event: WebhookEvent
    subscription: WebhookSubscription
    secret: str


_STOP = object()


class WebhookDispatcher:
    """Event queue plus a bounded pool of delivery workers."""

    def __init__(
        self,
        registry: WebhookRegistry,
        accounts: AccountStore,
        timeout: float = 5.0,
        workers: int = 4,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self.registry = registry
        self.accounts = accounts
        self.timeout = timeout
        self.worker_count = workers
        self.metrics = metrics
        self.clock = clock
        self._queue: "queue.Queue" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            for i in range(self.worker_count):
                thread = threading.Thread(
                    target=self._work, name=f"webhook-worker-{i}", daemon=True
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Webhook dispatcher started with %d workers", self.worker_count)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the workers, first delivering everything already queued if ``wait``."""
        with self._lock:
            if not self._threads:
                return
            if wait:
                self._queue.join()
            for _ in self._threads:
                self._queue.put(_STOP)
            for thread in self._threads:
                thread.join(timeout=self.timeout + 1 if wait else 0)
            self._threads = []
        logger.info("Webhook dispatcher stopped")

    def drain(self) -> None:
        """Block until every queued event and delivery has been processed."""
        self._queue.join()

    def dispatch(self, bot_id: str, event_type: str, data: Dict[str, Any]) -> WebhookEvent:
        """Queue an event for delivery and return immediately."""
        event = WebhookEvent.create(event_type, bot_id, data, self.clock())
        self._queue.put(_EventJob(event))
        return event

    # Matches the ledger's notifier signature
    __call__ = dispatch

    def _work(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                if isinstance(job, _EventJob):
                    self._fan_out(job.event)
                else:
                    self.deliver(job.event, job.subscription, job.secret)
            except Exception:
                logger.exception("Webhook worker failed on %r", job)
            finally:
                self._queue.task_done()

    def _fan_out(self, event: WebhookEvent) -> None:
        account = self.accounts.get(event.bot_id)
        if account is None:
            logger.debug("Dropping %s event for unknown bot %s", event.event, event.bot_id)
            return
        for subscription in self.registry.matching(event.bot_id, event.event):
            self._queue.put(_DeliveryJob(event, subscription, account.hmac_secret))

    def deliver(self, event: WebhookEvent, subscription: WebhookSubscription, secret: str) -> DeliveryResult:
        """Make one signed POST and fold the outcome into the subscription.

        Never raises for transport failures.
        """
        body = serialize_envelope(event.envelope())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: sign(body, secret, int(event.timestamp.timestamp())),
            EVENT_ID_HEADER: event.id,
            EVENT_TYPE_HEADER: event.event,
        }

        deadline = time.monotonic() + self.timeout
        try:
            response = requests.post(
                subscription.url,
                data=body.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
                allow_redirects=False,
                stream=True,
            )
            try:
                status_code = response.status_code
                response_body = _read_body(response, deadline)
            finally:
                response.close()
        except requests.RequestException as e:
            message = _describe(e)
            result = DeliveryResult(
                subscription_id=subscription.id,
                url=subscription.url,
                event_id=event.id,
                success=False,
                error=message,
            )
            logger.warning("Webhook %s delivery of %s failed: %s", subscription.id, event.id, message)
            self._bookkeep(self.registry.record_failure, subscription.id, self.clock(), message)
        else:
            result = DeliveryResult(
                subscription_id=subscription.id,
                url=subscription.url,
                event_id=event.id,
                success=True,
                status_code=status_code,
                response_body=response_body,
            )
            logger.debug("Webhook %s delivered %s (HTTP %d)", subscription.id, event.id, status_code)
            self._bookkeep(self.registry.record_success, subscription.id, self.clock())

        if self.metrics is not None:
            outcome = "delivered" if result.success else "failed"
            self.metrics.webhook_deliveries.labels(event_type=event.event, outcome=outcome).inc()
        return result

    def test(self, bot_id: str, subscription_id: str) -> DeliveryResult:
        """Synchronously send a ``test`` event to one subscription.

        Raises:
            SubscriptionNotFound: If the bot has no such active subscription
            AccountNotFound: If the bot is unknown or inactive
        """
        subscription = self.registry.get(bot_id, subscription_id)
        account = self.accounts.get(bot_id)
        if account is None:
            raise AccountNotFound(bot_id)
        now = self.clock()
        event = WebhookEvent.create(TEST_EVENT_TYPE, bot_id, {
            "message": "This is a test webhook event",
            "timestamp": now.isoformat(),
        }, now)
        return self.deliver(event, subscription, account.hmac_secret)

    def _bookkeep(self, record: Callable, *args) -> None:
        try:
            record(*args)
        except PersistenceError:
            logger.warning("Could not update webhook delivery stats", exc_info=True)


def _read_body(response: requests.Response, deadline: float) -> str:
    """Read at most MAX_RESPONSE_BODY bytes of a streamed response before ``deadline``.

    Reads one byte at a time so a target trickling its body cannot hold the
    worker past the deadline; whatever arrived by then is returned. The
    status line already arrived, so a broken body still counts as delivered.
    """
    received = bytearray()
    try:
        for chunk in response.iter_content(chunk_size=1):
            received.extend(chunk)
            if len(received) >= MAX_RESPONSE_BODY or time.monotonic() >= deadline:
                break
    except requests.RequestException as e:
        logger.debug("Stopped reading webhook response body: %s", e)
    return bytes(received[:MAX_RESPONSE_BODY]).decode("utf-8", errors="replace")


def _describe(error: requests.RequestException) -> str:
    if isinstance(error, requests.Timeout):
        message = f"Timed out: {error}"
    elif isinstance(error, requests.ConnectionError):
        message = f"Connection error: {error}"
    else:
        message = str(error) or type(error).__name__
    return message[:MAX_FAILURE_MESSAGE]
