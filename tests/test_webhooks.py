"""
Unit tests for webhook registration and delivery.
"""

import json
import os
import socket
import tempfile
import threading
import time
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from bot_credit_guard.core.accounts import AccountStore
from bot_credit_guard.core.errors import (
    AccountNotFound,
    InvalidEventType,
    InvalidWebhookUrl,
    SubscriptionNotFound,
)
from bot_credit_guard.core.ledger import CreditLedger
from bot_credit_guard.core.metrics import MetricsRegistry
from bot_credit_guard.storage.models import WebhookEventType
from bot_credit_guard.storage.repository import WebhookRepository, initialize_schema
from bot_credit_guard.webhooks import WebhookDispatcher, WebhookEvent, WebhookRegistry
from bot_credit_guard.webhooks.dispatcher import MAX_RESPONSE_BODY
from bot_credit_guard.webhooks.registry import validate_url
from bot_credit_guard.webhooks.signing import SIGNATURE_HEADER, verify

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def ok_response(status_code: int = 200, text: str = "ok") -> Mock:
    response = Mock()
    response.status_code = status_code
    response.iter_content.return_value = [bytes([b]) for b in text.encode("utf-8")]
    return response


class WebhookTestCase:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "webhooks.db")
        initialize_schema(self.db_path)
        clock = lambda: NOW
        self.ledger = CreditLedger(self.db_path, clock=clock)
        self.accounts = AccountStore(self.db_path, self.ledger, clock=clock)
        self.account = self.accounts.create_account("Hook Bot").account
        self.bot_id = self.account.id
        self.registry = WebhookRegistry(WebhookRepository(self.db_path), self.accounts, clock=clock)
        self.metrics = MetricsRegistry()
        self.dispatcher = WebhookDispatcher(
            self.registry, self.accounts, timeout=2.0, workers=2, metrics=self.metrics, clock=clock
        )

    def teardown_method(self):
        self.dispatcher.shutdown(wait=False)
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestUrlValidation:
    @pytest.mark.parametrize("url", [
        "https://example.com/hook",
        "http://localhost:8080/events",
        "https://hooks.example.com/a?b=c",
    ])
    def test_valid(self, url):
        assert validate_url(url) == url

    @pytest.mark.parametrize("url", [
        "",
        "not a url",
        "ftp://example.com/hook",
        "https://",
        "https://example.com:99999/",
        "https://exa mple.com/",
        "https://example.com/" + "a" * 2100,
        None,
    ])
    def test_invalid(self, url):
        with pytest.raises(InvalidWebhookUrl):
            validate_url(url)


class TestWebhookRegistry(WebhookTestCase):
    """Test subscription management."""

    def test_register_defaults_to_all_events(self):
        subscription = self.registry.register(self.bot_id, "https://example.com/hook")

        assert subscription.event_type == WebhookEventType.ALL
        assert subscription.is_active
        assert subscription.failure_count == 0
        assert subscription.last_triggered_at is None

    def test_same_url_overwrites_event_type(self):
        first = self.registry.register(self.bot_id, "https://example.com/hook", "all")
        second = self.registry.register(self.bot_id, "https://example.com/hook", "purchase")

        subscriptions = self.registry.list(self.bot_id)
        assert len(subscriptions) == 1
        assert second.id == first.id
        assert subscriptions[0].event_type == WebhookEventType.PURCHASE

    def test_invalid_event_type(self):
        with pytest.raises(InvalidEventType) as exc_info:
            self.registry.register(self.bot_id, "https://example.com/hook", "refund")
        assert "purchase" in exc_info.value.details["validEventTypes"]

    def test_invalid_url_writes_nothing(self):
        with pytest.raises(InvalidWebhookUrl):
            self.registry.register(self.bot_id, "javascript:alert(1)")
        assert self.registry.list(self.bot_id) == []

    def test_unknown_bot(self):
        with pytest.raises(AccountNotFound):
            self.registry.register("missing", "https://example.com/hook")

    def test_delete(self):
        subscription = self.registry.register(self.bot_id, "https://example.com/hook")

        self.registry.delete(self.bot_id, subscription.id)

        assert self.registry.list(self.bot_id) == []
        with pytest.raises(SubscriptionNotFound):
            self.registry.delete(self.bot_id, subscription.id)

    def test_cannot_touch_another_bots_subscription(self):
        other = self.accounts.create_account("Other Bot").account.id
        subscription = self.registry.register(other, "https://example.com/hook")

        with pytest.raises(SubscriptionNotFound):
            self.registry.get(self.bot_id, subscription.id)
        with pytest.raises(SubscriptionNotFound):
            self.registry.delete(self.bot_id, subscription.id)

    def test_matching(self):
        self.registry.register(self.bot_id, "https://a.example.com/", "all")
        self.registry.register(self.bot_id, "https://b.example.com/", "purchase")
        self.registry.register(self.bot_id, "https://c.example.com/", "credit_update")

        urls = sorted(s.url for s in self.registry.matching(self.bot_id, "purchase"))

        assert urls == ["https://a.example.com/", "https://b.example.com/"]


class TestDelivery(WebhookTestCase):
    """Test single deliveries and their bookkeeping."""

    def setup_method(self):
        super().setup_method()
        self.subscription = self.registry.register(self.bot_id, "https://example.com/hook")
        self.event = WebhookEvent.create("purchase", self.bot_id, {"amount": 10}, NOW)

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_successful_delivery(self, mock_post):
        mock_post.return_value = ok_response()

        result = self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        assert result.success
        assert result.status_code == 200
        stored = self.registry.get(self.bot_id, self.subscription.id)
        assert stored.last_triggered_at == NOW
        assert stored.failure_count == 0

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_request_is_signed(self, mock_post):
        mock_post.return_value = ok_response()

        self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        args, kwargs = mock_post.call_args
        assert args[0] == "https://example.com/hook"
        assert kwargs["timeout"] == 2.0
        body = kwargs["data"].decode("utf-8")
        headers = kwargs["headers"]
        assert verify(headers[SIGNATURE_HEADER], body, self.account.hmac_secret)
        assert headers["X-Bot-API-Event-ID"] == self.event.id
        assert headers["X-Bot-API-Event-Type"] == "purchase"
        assert headers["Content-Type"] == "application/json"

        envelope = json.loads(body)
        assert envelope == {
            "id": self.event.id,
            "event": "purchase",
            "botId": self.bot_id,
            "timestamp": NOW.isoformat(),
            "data": {"amount": 10},
        }

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_non_2xx_response_counts_as_delivered(self, mock_post):
        mock_post.return_value = ok_response(500, "boom")

        result = self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        assert result.success
        assert result.status_code == 500
        assert self.registry.get(self.bot_id, self.subscription.id).failure_count == 0

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_timeout_records_failure(self, mock_post):
        mock_post.side_effect = requests.Timeout("read timed out")

        result = self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        assert not result.success
        assert "Timed out" in result.error
        stored = self.registry.get(self.bot_id, self.subscription.id)
        assert stored.failure_count == 1
        assert stored.last_failure_at == NOW
        assert stored.last_triggered_at is None
        assert mock_post.call_count == 1

        failed = self.metrics.registry.get_sample_value(
            "bot_api_webhook_deliveries_total", {"event_type": "purchase", "outcome": "failed"})
        assert failed == 1.0

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_connection_error_records_failure(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")

        self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)
        self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        stored = self.registry.get(self.bot_id, self.subscription.id)
        assert stored.failure_count == 2
        assert stored.last_failure_message.startswith("Connection error")

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_response_is_streamed_capped_and_closed(self, mock_post):
        response = ok_response(200, "x" * (MAX_RESPONSE_BODY + 500))
        mock_post.return_value = response

        result = self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        assert mock_post.call_args.kwargs["stream"] is True
        assert len(result.response_body) == MAX_RESPONSE_BODY
        response.close.assert_called_once()

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_broken_body_still_counts_as_delivered(self, mock_post):
        response = ok_response(200)
        response.iter_content.side_effect = requests.ConnectionError("reset by peer")
        mock_post.return_value = response

        result = self.dispatcher.deliver(self.event, self.subscription, self.account.hmac_secret)

        assert result.success
        assert result.response_body == ""
        assert self.registry.get(self.bot_id, self.subscription.id).failure_count == 0


class TestSlowTarget(WebhookTestCase):
    """A target that sends headers and then trickles its body."""

    def setup_method(self):
        super().setup_method()
        self.stop = threading.Event()
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(1)
        self.server_thread = threading.Thread(target=self._serve, daemon=True)
        self.server_thread.start()
        port = self.server.getsockname()[1]
        self.subscription = self.registry.register(self.bot_id, f"http://127.0.0.1:{port}/hook")

    def teardown_method(self):
        self.stop.set()
        self.server.close()
        self.server_thread.join(timeout=2)
        super().teardown_method()

    def _serve(self):
        try:
            conn, _ = self.server.accept()
        except OSError:
            return
        with conn:
            try:
                conn.recv(65536)
                conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 40\r\n\r\n")
                for _ in range(40):
                    if self.stop.wait(0.2):
                        return
                    conn.sendall(b"x")
            except OSError:
                return

    def test_delivery_stops_at_timeout(self):
        dispatcher = WebhookDispatcher(self.registry, self.accounts, timeout=1.0, workers=1)

        started = time.monotonic()
        result = dispatcher.test(self.bot_id, self.subscription.id)
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert result.success
        assert result.status_code == 200
        assert len(result.response_body) < 40


class TestDispatcher(WebhookTestCase):
    """Test queued fan-out and the synchronous test event."""

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_dispatch_fans_out_to_matching_subscriptions(self, mock_post):
        mock_post.return_value = ok_response()
        self.registry.register(self.bot_id, "https://a.example.com/", "all")
        self.registry.register(self.bot_id, "https://b.example.com/", "purchase")
        self.registry.register(self.bot_id, "https://c.example.com/", "usage")

        self.dispatcher.start()
        event = self.dispatcher.dispatch(self.bot_id, "purchase", {"amount": 5})
        self.dispatcher.drain()

        urls = sorted(call.args[0] for call in mock_post.call_args_list)
        assert urls == ["https://a.example.com/", "https://b.example.com/"]
        assert event.id.startswith("evt_")

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_one_failing_subscription_does_not_block_others(self, mock_post):
        def post(url, **kwargs):
            if "bad" in url:
                raise requests.ConnectionError("refused")
            return ok_response()

        mock_post.side_effect = post
        good = self.registry.register(self.bot_id, "https://good.example.com/")
        bad = self.registry.register(self.bot_id, "https://bad.example.com/")

        self.dispatcher.start()
        self.dispatcher.dispatch(self.bot_id, "credit_update", {"creditsRemaining": 3})
        self.dispatcher.drain()

        assert self.registry.get(self.bot_id, good.id).last_triggered_at == NOW
        assert self.registry.get(self.bot_id, bad.id).failure_count == 1

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_shutdown_delivers_queued_events(self, mock_post):
        mock_post.return_value = ok_response()
        self.registry.register(self.bot_id, "https://example.com/hook")

        self.dispatcher.start()
        for i in range(5):
            self.dispatcher(self.bot_id, "usage", {"n": i})
        self.dispatcher.shutdown(wait=True)

        assert mock_post.call_count == 5
        assert not self.dispatcher.running

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_events_for_unknown_bot_are_dropped(self, mock_post):
        self.dispatcher.start()
        self.dispatcher.dispatch("missing", "purchase", {})
        self.dispatcher.drain()

        mock_post.assert_not_called()

    @patch("bot_credit_guard.webhooks.dispatcher.requests.post")
    def test_test_event_is_synchronous(self, mock_post):
        mock_post.return_value = ok_response(204, "")
        subscription = self.registry.register(self.bot_id, "https://example.com/hook")

        result = self.dispatcher.test(self.bot_id, subscription.id)

        assert result.success
        assert result.status_code == 204
        assert result.event_id.startswith("evt_test_")
        body = json.loads(mock_post.call_args.kwargs["data"])
        assert body["event"] == "test"
        assert body["data"]["message"]

    def test_test_unknown_subscription(self):
        with pytest.raises(SubscriptionNotFound):
            self.dispatcher.test(self.bot_id, "missing")

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            WebhookDispatcher(self.registry, self.accounts, workers=0)
