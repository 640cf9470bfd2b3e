"""
Tier table.

Maps each tier to its daily request ceiling and starting balance. The
mapping is a pure function of the tier: changing a bot's tier always
re-derives its daily limit from this table.
"""

from dataclasses import dataclass
from typing import Dict, Union

from bot_credit_guard.config.loader import DEFAULT_TIERS, TierConfig
from bot_credit_guard.storage.models import Tier
from .errors import ValidationError


@dataclass(frozen=True)
class TierTable:
    """Fixed tier table for supported tiers."""
    limits: Dict[Tier, TierConfig]

    def get(self, tier: Tier) -> TierConfig:
        """Get limits for a tier.

        Raises:
            ValueError: If tier is not in the table
        """
        if tier not in self.limits:
            raise ValueError(f"Unsupported tier: {tier}")
        return self.limits[tier]

    def daily_limit(self, tier: Tier) -> int:
        return self.get(tier).daily_limit

    def initial_credits(self, tier: Tier) -> int:
        return self.get(tier).initial_credits


DEFAULT_TIER_TABLE = TierTable(dict(DEFAULT_TIERS))


def parse_tier(value: Union[str, Tier]) -> Tier:
    """Convert a tier name from a request or CLI argument.

    Raises:
        ValidationError: If the name is not a known tier
    """
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        valid = [t.value for t in Tier]
        raise ValidationError(f"tier must be one of: {valid}", {"tier": value})
