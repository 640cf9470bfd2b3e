"""
Service wiring.

Builds every component from one ``Settings`` object. Nothing here is a
module-level singleton: each container owns its own metrics registry,
dispatcher workers and database path.
"""

import logging
from dataclasses import dataclass

from bot_credit_guard.config.loader import Settings
from bot_credit_guard.storage.repository import (
    InvoiceRepository,
    UsageRepository,
    WebhookRepository,
    initialize_schema,
)
from bot_credit_guard.webhooks.dispatcher import WebhookDispatcher
from bot_credit_guard.webhooks.registry import WebhookRegistry
from .accounts import AccountStore
from .ledger import CreditLedger
from .metrics import MetricsRegistry
from .purchases import PurchaseService
from .quota import Meter, QuotaEnforcer
from .tiers import TierTable
from .usage import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    metrics: MetricsRegistry
    ledger: CreditLedger
    accounts: AccountStore
    quota: QuotaEnforcer
    usage: UsageRecorder
    meter: Meter
    webhooks: WebhookRegistry
    dispatcher: WebhookDispatcher
    purchases: PurchaseService

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        db_path = settings.db_path
        initialize_schema(db_path)

        metrics = MetricsRegistry()
        tiers = TierTable(dict(settings.tiers))
        ledger = CreditLedger(
            db_path,
            tiers=tiers,
            low_balance_ratio=settings.credits.low_balance_ratio,
            metrics=metrics,
        )
        accounts = AccountStore(db_path, ledger, api_key_salt=settings.api_key_salt, tiers=tiers)
        registry = WebhookRegistry(WebhookRepository(db_path), accounts)
        dispatcher = WebhookDispatcher(
            registry,
            accounts,
            timeout=settings.webhooks.timeout_seconds,
            workers=settings.webhooks.workers,
            metrics=metrics,
        )
        ledger.notifier = dispatcher
        quota = QuotaEnforcer(ledger, metrics)
        usage = UsageRecorder(UsageRepository(db_path))
        purchases = PurchaseService(
            ledger,
            InvoiceRepository(db_path),
            price_per_credit=settings.credits.price_per_credit,
            notifier=dispatcher,
        )
        return cls(
            settings=settings,
            metrics=metrics,
            ledger=ledger,
            accounts=accounts,
            quota=quota,
            usage=usage,
            meter=Meter(quota, ledger, usage),
            webhooks=registry,
            dispatcher=dispatcher,
            purchases=purchases,
        )

    def start(self) -> "ServiceContainer":
        self.metrics.start()
        self.dispatcher.start()
        return self

    def shutdown(self) -> None:
        """Deliver queued webhooks, then stop workers."""
        self.dispatcher.shutdown(wait=True)
        self.metrics.shutdown()

    def __enter__(self) -> "ServiceContainer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
