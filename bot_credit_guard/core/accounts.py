"""
Bot account store and credential boundary.

Owns bot identity, tier and hashed credentials. Plaintext API keys leave
this module exactly once, in the result of ``create_account`` or
``rotate_key``; afterwards only their salted hash is kept.
"""

import hashlib
import hmac
import logging
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from bot_credit_guard.storage.db import get_connection
from bot_credit_guard.storage.models import BotAccount, Tier
from bot_credit_guard.storage.repository import ACCOUNT_COLUMNS, row_to_account
from .errors import AccountNotFound, PersistenceError, ValidationError
from .ledger import CreditLedger, next_reset_date
from .tiers import DEFAULT_TIER_TABLE, TierTable, parse_tier

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "bot_"
HMAC_SECRET_PREFIX = "whsec_"
MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 100


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(16)}"


def generate_hmac_secret() -> str:
    return f"{HMAC_SECRET_PREFIX}{secrets.token_hex(24)}"


def hash_api_key(api_key: str, salt: str) -> str:
    """Salted HMAC-SHA256 of an API key, hex encoded."""
    return hmac.new(salt.encode("utf-8"), api_key.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class AccountCredentials:
    """A freshly issued API key together with the account it belongs to."""
    account: BotAccount
    api_key: str


class AccountStore:
    """Create, look up, verify and retire bot accounts."""

    def __init__(
        self,
        db_path: str,
        ledger: CreditLedger,
        api_key_salt: str = "default-salt",
        tiers: TierTable = DEFAULT_TIER_TABLE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.ledger = ledger
        self.api_key_salt = api_key_salt
        self.tiers = tiers
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_account(self, name: str, tier=Tier.FREE) -> AccountCredentials:
        """Register a bot and open its credit balance from the tier defaults.

        Args:
            name: Display name (3-100 characters)
            tier: Tier name or ``Tier``

        Returns:
            The stored account and its plaintext API key

        Raises:
            ValidationError: If name or tier is invalid
            PersistenceError: If the database write fails
        """
        name = (name or "").strip()
        if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters"
            )
        tier = parse_tier(tier)
        initial_credits = self.tiers.initial_credits(tier)
        daily_limit = self.tiers.daily_limit(tier)

        now = self._clock()
        api_key = generate_api_key()
        account = BotAccount(
            id=str(uuid.uuid4()),
            name=name,
            tier=tier,
            is_active=True,
            api_key_hash=hash_api_key(api_key, self.api_key_salt),
            hmac_secret=generate_hmac_secret(),
            created_at=now,
        )

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                f"INSERT INTO bot_account ({ACCOUNT_COLUMNS}) VALUES (?, ?, ?, 1, ?, ?, ?, NULL)",
                (
                    account.id,
                    account.name,
                    account.tier.value,
                    account.api_key_hash,
                    account.hmac_secret,
                    account.created_at.isoformat(),
                ),
            )
            conn.execute(
                """
                INSERT INTO credit_balance
                (bot_id, credits_remaining, total_purchased, total_used,
                 usage_today, daily_limit, reset_date)
                VALUES (?, ?, 0, 0, 0, ?, ?)
                """,
                (account.id, initial_credits, daily_limit,
                 next_reset_date(now).isoformat()),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to create bot account: {e}") from e
        finally:
            conn.close()

        logger.info("Created bot %s (%s tier)", account.id, tier.value)
        return AccountCredentials(account=account, api_key=api_key)

    def get(self, bot_id: str, include_inactive: bool = False) -> Optional[BotAccount]:
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {ACCOUNT_COLUMNS} FROM bot_account WHERE id = ?"
            if not include_inactive:
                query += " AND is_active = 1"
            row = conn.execute(query, (bot_id,)).fetchone()
            return row_to_account(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read bot {bot_id}: {e}") from e
        finally:
            conn.close()

    def require(self, bot_id: str) -> BotAccount:
        account = self.get(bot_id)
        if account is None:
            raise AccountNotFound(bot_id)
        return account

    def verify(self, api_key: Optional[str]) -> Optional[BotAccount]:
        """Look up the active account owning an API key.

        Returns:
            The account, or None if the key is unknown or the bot inactive
        """
        if not api_key:
            return None
        key_hash = hash_api_key(api_key, self.api_key_salt)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM bot_account WHERE api_key_hash = ? AND is_active = 1",
                (key_hash,),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to verify API key: {e}") from e
        finally:
            conn.close()
        if row is None:
            return None
        account = row_to_account(row)
        # Constant-time re-check of the looked-up hash
        if not hmac.compare_digest(account.api_key_hash, key_hash):
            return None
        return account

    def rotate_key(self, bot_id: str) -> AccountCredentials:
        """Issue a new API key. The old key stops working immediately.

        Raises:
            AccountNotFound: If the bot is unknown or inactive
        """
        now = self._clock()
        api_key = generate_api_key()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE bot_account
                SET api_key_hash = ?, last_api_key_rotated_at = ?
                WHERE id = ? AND is_active = 1
                """,
                (hash_api_key(api_key, self.api_key_salt), now.isoformat(), bot_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to rotate API key: {e}") from e
        finally:
            conn.close()

        if cursor.rowcount == 0:
            raise AccountNotFound(bot_id)
        logger.info("Rotated API key for bot %s", bot_id)
        return AccountCredentials(account=self.require(bot_id), api_key=api_key)

    def set_tier(self, bot_id: str, tier) -> BotAccount:
        """Change a bot's tier and re-derive its daily limit.

        The tier and the daily limit change in one transaction, so a
        concurrent deactivation sees either both or neither.

        Raises:
            ValidationError: If the tier name is unknown
            AccountNotFound: If the bot is unknown or inactive
        """
        tier = parse_tier(tier)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "UPDATE bot_account SET tier = ? WHERE id = ? AND is_active = 1",
                (tier.value, bot_id),
            )
            if cursor.rowcount == 0:
                raise AccountNotFound(bot_id)
            self.ledger.apply_daily_limit(conn, bot_id, tier)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to change tier for {bot_id}: {e}") from e
        except AccountNotFound:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info("Bot %s moved to %s tier", bot_id, tier.value)
        return self.require(bot_id)

    def deactivate(self, bot_id: str) -> None:
        """Soft-delete a bot; its usage and invoice history stay in place."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE bot_account SET is_active = 0 WHERE id = ? AND is_active = 1",
                (bot_id,),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to deactivate bot {bot_id}: {e}") from e
        finally:
            conn.close()
        if cursor.rowcount == 0:
            raise AccountNotFound(bot_id)
        logger.info("Deactivated bot %s", bot_id)
