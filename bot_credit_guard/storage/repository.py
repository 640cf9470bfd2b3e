"""
Repository pattern for data access.

Handles schema creation, row mapping, and the persistence of usage
aggregates, invoices and webhook subscriptions. The credit balance hot
path lives in ``core.ledger`` because it needs its own transaction shape.
"""

import json
import sqlite3
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from .db import get_connection
from .models import (
    BotAccount,
    CreditBalance,
    Invoice,
    InvoiceStatus,
    Tier,
    UsageRecord,
    WebhookEventType,
    WebhookSubscription,
)
from bot_credit_guard.core.errors import PersistenceError


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS bot_account (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        tier TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        api_key_hash TEXT NOT NULL UNIQUE,
        hmac_secret TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_api_key_rotated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_balance (
        bot_id TEXT PRIMARY KEY REFERENCES bot_account(id),
        credits_remaining INTEGER NOT NULL DEFAULT 0 CHECK (credits_remaining >= 0),
        total_purchased INTEGER NOT NULL DEFAULT 0 CHECK (total_purchased >= 0),
        total_used INTEGER NOT NULL DEFAULT 0 CHECK (total_used >= 0),
        usage_today INTEGER NOT NULL DEFAULT 0 CHECK (usage_today >= 0),
        daily_limit INTEGER NOT NULL CHECK (daily_limit > 0),
        reset_date TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_usage (
        bot_id TEXT NOT NULL REFERENCES bot_account(id),
        date TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        success_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        credits_used INTEGER NOT NULL DEFAULT 0,
        endpoint_breakdown TEXT NOT NULL DEFAULT '{}',
        error_breakdown TEXT NOT NULL DEFAULT '{}',
        UNIQUE (bot_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscription (
        id TEXT PRIMARY KEY,
        bot_id TEXT NOT NULL REFERENCES bot_account(id),
        url TEXT NOT NULL,
        event_type TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        description TEXT,
        failure_count INTEGER NOT NULL DEFAULT 0,
        last_triggered_at TEXT,
        last_failure_at TEXT,
        last_failure_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_webhook_subscription_bot
        ON webhook_subscription (bot_id, url)
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice (
        id TEXT PRIMARY KEY,
        bot_id TEXT NOT NULL REFERENCES bot_account(id),
        amount INTEGER NOT NULL CHECK (amount > 0),
        price_per_credit REAL NOT NULL,
        total_price REAL NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
)


def initialize_schema(db_path: str = "bot_credit_guard.db") -> None:
    """Create all tables if they don't exist.

    Switches the database to WAL journaling so readers never block the
    ledger's writers.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def row_to_account(row) -> BotAccount:
    return BotAccount(
        id=row[0],
        name=row[1],
        tier=Tier(row[2]),
        is_active=bool(row[3]),
        api_key_hash=row[4],
        hmac_secret=row[5],
        created_at=_dt(row[6]),
        last_api_key_rotated_at=_dt(row[7]),
    )


ACCOUNT_COLUMNS = (
    "id, name, tier, is_active, api_key_hash, hmac_secret, "
    "created_at, last_api_key_rotated_at"
)

BALANCE_COLUMNS = (
    "bot_id, credits_remaining, total_purchased, total_used, "
    "usage_today, daily_limit, reset_date"
)


def row_to_balance(row) -> CreditBalance:
    return CreditBalance(
        bot_id=row[0],
        credits_remaining=row[1],
        total_purchased=row[2],
        total_used=row[3],
        usage_today=row[4],
        daily_limit=row[5],
        reset_date=_dt(row[6]),
    )


USAGE_COLUMNS = (
    "bot_id, date, request_count, success_count, error_count, "
    "credits_used, endpoint_breakdown, error_breakdown"
)


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        bot_id=row[0],
        date=date.fromisoformat(row[1]),
        request_count=row[2],
        success_count=row[3],
        error_count=row[4],
        credits_used=row[5],
        endpoint_breakdown=json.loads(row[6] or "{}"),
        error_breakdown=json.loads(row[7] or "{}"),
    )


WEBHOOK_COLUMNS = (
    "id, bot_id, url, event_type, is_active, description, failure_count, "
    "last_triggered_at, last_failure_at, last_failure_message, created_at"
)


def _row_to_subscription(row) -> WebhookSubscription:
    return WebhookSubscription(
        id=row[0],
        bot_id=row[1],
        url=row[2],
        event_type=WebhookEventType(row[3]),
        is_active=bool(row[4]),
        description=row[5],
        failure_count=row[6],
        last_triggered_at=_dt(row[7]),
        last_failure_at=_dt(row[8]),
        last_failure_message=row[9],
        created_at=_dt(row[10]),
    )


INVOICE_COLUMNS = "id, bot_id, amount, price_per_credit, total_price, status, created_at"


def _row_to_invoice(row) -> Invoice:
    return Invoice(
        id=row[0],
        bot_id=row[1],
        amount=row[2],
        price_per_credit=row[3],
        total_price=row[4],
        status=InvoiceStatus(row[5]),
        created_at=_dt(row[6]),
    )


class UsageRepository:
    """Repository for per-day usage aggregates.

    Increments run inside ``BEGIN IMMEDIATE`` so two writers for the same
    (bot, day) serialize on the database lock and never lose an update to
    the JSON breakdown maps.
    """

    def __init__(self, db_path: str = "bot_credit_guard.db"):
        self.db_path = db_path

    def increment(
        self,
        bot_id: str,
        day: date,
        endpoint: str,
        succeeded: bool,
        error_kind: Optional[str] = None,
        credits: int = 1,
    ) -> UsageRecord:
        """Add one request to the (bot, day) aggregate, creating it on first write.

        Args:
            bot_id: Owning bot
            day: UTC calendar day of the request
            endpoint: Endpoint name for the per-endpoint breakdown
            succeeded: Whether the request succeeded
            error_kind: Error classification, counted only for failures
            credits: Credits consumed by the request

        Returns:
            The aggregate after the increment

        Raises:
            PersistenceError: If the database write fails
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT {USAGE_COLUMNS} FROM api_usage WHERE bot_id = ? AND date = ?",
                (bot_id, day.isoformat()),
            ).fetchone()
            if row is None:
                record = UsageRecord(bot_id=bot_id, date=day)
                conn.execute(
                    "INSERT INTO api_usage (bot_id, date) VALUES (?, ?)",
                    (bot_id, day.isoformat()),
                )
            else:
                record = _row_to_usage(row)

            endpoints = dict(record.endpoint_breakdown)
            endpoints[endpoint] = endpoints.get(endpoint, 0) + 1
            errors = dict(record.error_breakdown)
            if not succeeded:
                kind = error_kind or "unknown"
                errors[kind] = errors.get(kind, 0) + 1

            conn.execute(
                """
                UPDATE api_usage
                SET request_count = request_count + 1,
                    success_count = success_count + ?,
                    error_count = error_count + ?,
                    credits_used = credits_used + ?,
                    endpoint_breakdown = ?,
                    error_breakdown = ?
                WHERE bot_id = ? AND date = ?
                """,
                (
                    1 if succeeded else 0,
                    0 if succeeded else 1,
                    credits,
                    json.dumps(endpoints, sort_keys=True),
                    json.dumps(errors, sort_keys=True),
                    bot_id,
                    day.isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to record usage for {bot_id}: {e}") from e
        finally:
            conn.close()

        return UsageRecord(
            bot_id=bot_id,
            date=day,
            request_count=record.request_count + 1,
            success_count=record.success_count + (1 if succeeded else 0),
            error_count=record.error_count + (0 if succeeded else 1),
            credits_used=record.credits_used + credits,
            endpoint_breakdown=endpoints,
            error_breakdown=errors,
        )

    def get_day(self, bot_id: str, day: date) -> Optional[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {USAGE_COLUMNS} FROM api_usage WHERE bot_id = ? AND date = ?",
                (bot_id, day.isoformat()),
            ).fetchone()
            return _row_to_usage(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read usage for {bot_id}: {e}") from e
        finally:
            conn.close()

    def get_range(self, bot_id: str, since: date, until: Optional[date] = None) -> List[UsageRecord]:
        """Get usage records between two days inclusive, newest first.

        Args:
            bot_id: Owning bot
            since: First day to include
            until: Last day to include (defaults to no upper bound)

        Returns:
            List of usage records ordered by date (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {USAGE_COLUMNS} FROM api_usage WHERE bot_id = ? AND date >= ?"
            params = [bot_id, since.isoformat()]
            if until is not None:
                query += " AND date <= ?"
                params.append(until.isoformat())
            query += " ORDER BY date DESC"
            return [_row_to_usage(row) for row in conn.execute(query, params).fetchall()]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read usage history for {bot_id}: {e}") from e
        finally:
            conn.close()


class WebhookRepository:
    """Repository for webhook subscription rows."""

    def __init__(self, db_path: str = "bot_credit_guard.db"):
        self.db_path = db_path

    def upsert(
        self,
        bot_id: str,
        url: str,
        event_type: WebhookEventType,
        description: Optional[str],
        now: datetime,
    ) -> WebhookSubscription:
        """Create a subscription, or update the existing one for (bot, url).

        The first row registered for a URL keeps its id and history; later
        registrations only overwrite event type and description and
        reactivate it.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT id FROM webhook_subscription
                WHERE bot_id = ? AND url = ?
                ORDER BY created_at ASC LIMIT 1
                """,
                (bot_id, url),
            ).fetchone()
            if row is None:
                subscription_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO webhook_subscription
                    (id, bot_id, url, event_type, is_active, description, created_at)
                    VALUES (?, ?, ?, ?, 1, ?, ?)
                    """,
                    (subscription_id, bot_id, url, event_type.value, description, now.isoformat()),
                )
            else:
                subscription_id = row[0]
                conn.execute(
                    """
                    UPDATE webhook_subscription
                    SET event_type = ?, is_active = 1,
                        description = COALESCE(?, description)
                    WHERE id = ?
                    """,
                    (event_type.value, description, subscription_id),
                )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to save webhook for {bot_id}: {e}") from e
        finally:
            conn.close()
        return self.get(subscription_id)

    def get(self, subscription_id: str, bot_id: Optional[str] = None) -> Optional[WebhookSubscription]:
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {WEBHOOK_COLUMNS} FROM webhook_subscription WHERE id = ?"
            params = [subscription_id]
            if bot_id is not None:
                query += " AND bot_id = ?"
                params.append(bot_id)
            row = conn.execute(query, params).fetchone()
            return _row_to_subscription(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read webhook {subscription_id}: {e}") from e
        finally:
            conn.close()

    def list_active(self, bot_id: str) -> List[WebhookSubscription]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT {WEBHOOK_COLUMNS} FROM webhook_subscription
                WHERE bot_id = ? AND is_active = 1
                ORDER BY created_at ASC
                """,
                (bot_id,),
            ).fetchall()
            return [_row_to_subscription(row) for row in rows]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list webhooks for {bot_id}: {e}") from e
        finally:
            conn.close()

    def delete(self, subscription_id: str, bot_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM webhook_subscription WHERE id = ? AND bot_id = ?",
                (subscription_id, bot_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to delete webhook {subscription_id}: {e}") from e
        finally:
            conn.close()

    def record_success(self, subscription_id: str, when: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE webhook_subscription SET last_triggered_at = ? WHERE id = ?",
                (when.isoformat(), subscription_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to update webhook {subscription_id}: {e}") from e
        finally:
            conn.close()

    def record_failure(self, subscription_id: str, when: datetime, message: str) -> None:
        """Increment the failure counter in a single statement."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                UPDATE webhook_subscription
                SET failure_count = failure_count + 1,
                    last_failure_at = ?,
                    last_failure_message = ?
                WHERE id = ?
                """,
                (when.isoformat(), message, subscription_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to update webhook {subscription_id}: {e}") from e
        finally:
            conn.close()


class InvoiceRepository:
    """Repository for purchase invoices."""

    def __init__(self, db_path: str = "bot_credit_guard.db"):
        self.db_path = db_path

    def create(self, bot_id: str, amount: int, price_per_credit: float, now: datetime) -> Invoice:
        invoice = Invoice(
            id=str(uuid.uuid4()),
            bot_id=bot_id,
            amount=amount,
            price_per_credit=price_per_credit,
            total_price=round(amount * price_per_credit, 6),
            status=InvoiceStatus.PENDING,
            created_at=now,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO invoice ({INVOICE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    invoice.id,
                    invoice.bot_id,
                    invoice.amount,
                    invoice.price_per_credit,
                    invoice.total_price,
                    invoice.status.value,
                    invoice.created_at.isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to create invoice for {bot_id}: {e}") from e
        finally:
            conn.close()
        return invoice

    def set_status(self, invoice_id: str, status: InvoiceStatus) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE invoice SET status = ? WHERE id = ?", (status.value, invoice_id))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to update invoice {invoice_id}: {e}") from e
        finally:
            conn.close()

    def get(self, invoice_id: str, bot_id: str) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {INVOICE_COLUMNS} FROM invoice WHERE id = ? AND bot_id = ?",
                (invoice_id, bot_id),
            ).fetchone()
            return _row_to_invoice(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read invoice {invoice_id}: {e}") from e
        finally:
            conn.close()

    def list_for_bot(self, bot_id: str, limit: int = 100) -> List[Invoice]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT {INVOICE_COLUMNS} FROM invoice
                WHERE bot_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (bot_id, limit),
            ).fetchall()
            return [_row_to_invoice(row) for row in rows]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list invoices for {bot_id}: {e}") from e
        finally:
            conn.close()


def merge_breakdowns(records: List[UsageRecord]) -> Dict[str, int]:
    """Sum the per-endpoint breakdowns of several usage records."""
    totals: Dict[str, int] = {}
    for record in records:
        for endpoint, count in record.endpoint_breakdown.items():
            totals[endpoint] = totals.get(endpoint, 0) + count
    return totals


def days_back(today: date, days: int) -> date:
    """First day of a window of ``days`` days ending today."""
    return today - timedelta(days=max(days, 1) - 1)
