"""
Prometheus metrics for ledger, quota and webhook activity.

Each ``MetricsRegistry`` owns a private ``CollectorRegistry``, so separate
application instances (and tests) never share counters.
"""

import time

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST

NAMESPACE = "bot_api"


class MetricsRegistry:
    """Explicitly constructed metrics component with a start/shutdown lifecycle."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self):
        self.registry = CollectorRegistry(auto_describe=True)
        self.http_requests = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "status_code"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.credits_used = Counter(
            "credits_used_total",
            "Total number of credits charged",
            ["endpoint"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.credits_purchased = Counter(
            "credits_purchased_total",
            "Total number of credits purchased",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.quota_rejections = Counter(
            "quota_rejections_total",
            "Requests rejected by the daily quota or an empty balance",
            ["reason"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.webhook_deliveries = Counter(
            "webhook_deliveries_total",
            "Webhook delivery attempts by outcome",
            ["event_type", "outcome"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.up = Gauge(
            "up",
            "1 while the service is started",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.start_time = Gauge(
            "start_time_seconds",
            "Unix time the service was started",
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def start(self) -> None:
        self.start_time.set(time.time())
        self.up.set(1)

    def shutdown(self) -> None:
        self.up.set(0)

    def render(self) -> bytes:
        """Exposition-format snapshot of every metric in this registry."""
        return generate_latest(self.registry)
