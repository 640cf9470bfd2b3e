"""
Credit purchases.

Turns an already-successful payment result into an invoice, a ledger
credit and a ``purchase`` event. Collecting the money is someone else's
job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from bot_credit_guard.storage.models import CreditBalance, Invoice, InvoiceStatus
from bot_credit_guard.storage.repository import InvoiceRepository
from .errors import BotApiError, InvoiceNotFound, ValidationError
from .ledger import CreditLedger, Notifier, utc_now

logger = logging.getLogger(__name__)

MAX_PURCHASE = 1_000_000


@dataclass(frozen=True)
class PurchaseResult:
    invoice: Invoice
    balance: CreditBalance


class PurchaseService:
    """Records invoices and credits the ledger for completed payments."""

    def __init__(
        self,
        ledger: CreditLedger,
        invoices: InvoiceRepository,
        price_per_credit: float = 0.001,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.invoices = invoices
        self.price_per_credit = price_per_credit
        self.notifier = notifier
        self.clock = clock

    def purchase(self, bot_id: str, amount: int) -> PurchaseResult:
        """Credit a bot for a completed payment.

        Args:
            bot_id: Purchasing bot
            amount: Credits bought (1..1,000,000)

        Returns:
            The paid invoice and the new balance

        Raises:
            ValidationError: If amount is out of range
            AccountNotFound: If the bot is unknown or inactive
            PersistenceError: If the credit could not be written; the invoice
                is then marked failed
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= MAX_PURCHASE:
            raise ValidationError(f"amount must be an integer between 1 and {MAX_PURCHASE}",
                                  {"amount": amount})

        # Fail before writing an invoice for an unknown bot
        self.ledger.rollover(bot_id)

        invoice = self.invoices.create(bot_id, amount, self.price_per_credit, self.clock())
        try:
            balance = self.ledger.credit(bot_id, amount)
        except BotApiError:
            self.invoices.set_status(invoice.id, InvoiceStatus.FAILED)
            raise
        self.invoices.set_status(invoice.id, InvoiceStatus.PAID)
        invoice = self.invoices.get(invoice.id, bot_id)
        logger.info("Bot %s purchased %d credits (invoice %s)", bot_id, amount, invoice.id)

        if self.notifier is not None:
            try:
                self.notifier(bot_id, "purchase", {
                    "amount": amount,
                    "creditsRemaining": balance.credits_remaining,
                    "invoiceId": invoice.id,
                    "totalPrice": invoice.total_price,
                })
            except Exception:
                logger.warning("Could not queue purchase event for bot %s", bot_id, exc_info=True)

        return PurchaseResult(invoice=invoice, balance=balance)

    def get_invoice(self, bot_id: str, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id, bot_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def list_invoices(self, bot_id: str, limit: int = 100) -> List[Invoice]:
        return self.invoices.list_for_bot(bot_id, limit)
