"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional

import yaml

from bot_credit_guard.storage.models import Tier

CONFIG_ENV_VAR = "BOT_CREDIT_GUARD_CONFIG"
DB_ENV_VAR = "BOT_CREDIT_GUARD_DB"
SALT_ENV_VAR = "BOT_CREDIT_GUARD_API_KEY_SALT"
LOG_LEVEL_ENV_VAR = "BOT_CREDIT_GUARD_LOG_LEVEL"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class TierConfig:
    """Quota and starting balance for one tier."""
    daily_limit: int
    initial_credits: int

    def __post_init__(self):
        """Validate tier values."""
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if self.initial_credits < 0:
            raise ValueError("initial_credits cannot be negative")


DEFAULT_TIERS: Dict[Tier, TierConfig] = {
    Tier.FREE: TierConfig(daily_limit=100, initial_credits=100),
    Tier.PREMIUM: TierConfig(daily_limit=10000, initial_credits=10000),
    Tier.ENTERPRISE: TierConfig(daily_limit=100000, initial_credits=10000),
}


@dataclass(frozen=True)
class CreditsConfig:
    price_per_credit: float = 0.001
    low_balance_ratio: float = 0.1

    def __post_init__(self):
        if self.price_per_credit <= 0:
            raise ValueError("price_per_credit must be > 0")
        if not 0 < self.low_balance_ratio < 1:
            raise ValueError("low_balance_ratio must be between 0 and 1")


@dataclass(frozen=True)
class WebhookConfig:
    timeout_seconds: float = 5.0
    workers: int = 4

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.workers <= 0:
            raise ValueError("workers must be > 0")


@dataclass(frozen=True)
class SandboxConfig:
    credits: int = 9999
    daily_limit: int = 100000

    def __post_init__(self):
        if self.credits < 0:
            raise ValueError("sandbox credits cannot be negative")
        if self.daily_limit <= 0:
            raise ValueError("sandbox daily_limit must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    db_path: str = "bot_credit_guard.db"
    api_key_salt: str = "default-salt"
    tiers: Dict[Tier, TierConfig] = field(default_factory=lambda: dict(DEFAULT_TIERS))
    credits: CreditsConfig = field(default_factory=CreditsConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    log_level: str = "INFO"


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from YAML (if any) and apply environment overrides.

    The file path is taken from ``path`` or the ``BOT_CREDIT_GUARD_CONFIG``
    environment variable. Without either, built-in defaults are used.

    Args:
        path: Optional path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    settings = load_settings_file(path) if path else Settings()
    return apply_env_overrides(settings, os.environ)


def apply_env_overrides(settings: Settings, environ) -> Settings:
    overrides = {}
    if environ.get(DB_ENV_VAR):
        overrides["db_path"] = environ[DB_ENV_VAR]
    if environ.get(SALT_ENV_VAR):
        overrides["api_key_salt"] = environ[SALT_ENV_VAR]
    if environ.get(LOG_LEVEL_ENV_VAR):
        overrides["log_level"] = _parse_log_level(environ[LOG_LEVEL_ENV_VAR], LOG_LEVEL_ENV_VAR)
    return replace(settings, **overrides) if overrides else settings


def load_settings_file(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations: a typo in a
    tier limit must not quietly fall back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'security', 'tiers', 'credits', 'webhooks', 'sandbox', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = Settings()

    database = _section(raw_config, 'database', {'path'})
    security = _section(raw_config, 'security', {'api_key_salt'})
    credits = _section(raw_config, 'credits', {'price_per_credit', 'low_balance_ratio'})
    webhooks = _section(raw_config, 'webhooks', {'timeout_seconds', 'workers'})
    sandbox = _section(raw_config, 'sandbox', {'credits', 'daily_limit'})
    logging_section = _section(raw_config, 'logging', {'level'})

    db_path = _string(database.get('path', defaults.db_path), 'database.path')
    salt = _string(security.get('api_key_salt', defaults.api_key_salt), 'security.api_key_salt')

    return Settings(
        db_path=db_path,
        api_key_salt=salt,
        tiers=_parse_tiers(raw_config.get('tiers') or {}),
        credits=CreditsConfig(
            price_per_credit=_number(
                credits.get('price_per_credit', defaults.credits.price_per_credit),
                'credits.price_per_credit'),
            low_balance_ratio=_number(
                credits.get('low_balance_ratio', defaults.credits.low_balance_ratio),
                'credits.low_balance_ratio'),
        ),
        webhooks=WebhookConfig(
            timeout_seconds=_number(
                webhooks.get('timeout_seconds', defaults.webhooks.timeout_seconds),
                'webhooks.timeout_seconds'),
            workers=_integer(webhooks.get('workers', defaults.webhooks.workers), 'webhooks.workers'),
        ),
        sandbox=SandboxConfig(
            credits=_integer(sandbox.get('credits', defaults.sandbox.credits), 'sandbox.credits'),
            daily_limit=_integer(
                sandbox.get('daily_limit', defaults.sandbox.daily_limit), 'sandbox.daily_limit'),
        ),
        log_level=_parse_log_level(logging_section.get('level', defaults.log_level), 'logging.level'),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_tiers(data: Dict) -> Dict[Tier, TierConfig]:
    """Parse and validate the tier table.

    Args:
        data: Mapping of tier name to tier settings

    Returns:
        Complete tier table; tiers not mentioned keep their defaults

    Raises:
        ValueError: If a tier name or value is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'tiers' must be a dictionary")

    tiers = dict(DEFAULT_TIERS)
    for tier_name, tier_data in data.items():
        try:
            tier = Tier(str(tier_name).lower())
        except ValueError:
            valid_tiers = [t.value for t in Tier]
            raise ValueError(f"Unknown tier '{tier_name}', must be one of: {valid_tiers}")

        if not isinstance(tier_data, dict):
            raise ValueError(f"Tier '{tier_name}' must be a dictionary")
        unknown_keys = set(tier_data.keys()) - {'daily_limit', 'initial_credits'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in tiers.{tier_name}: {unknown_keys}")

        current = tiers[tier]
        tiers[tier] = TierConfig(
            daily_limit=_integer(
                tier_data.get('daily_limit', current.daily_limit), f"tiers.{tier_name}.daily_limit"),
            initial_credits=_integer(
                tier_data.get('initial_credits', current.initial_credits),
                f"tiers.{tier_name}.initial_credits"),
        )
    return tiers


def _integer(value, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _number(value, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _string(value, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def _parse_log_level(value, path: str) -> str:
    if not isinstance(value, str) or value.upper() not in VALID_LOG_LEVELS:
        raise ValueError(f"'{path}' must be one of: {sorted(VALID_LOG_LEVELS)}")
    return value.upper()
