"""
Configuration management and loading.

Handles the pricing policy, database location and logging level.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.currency import RoundingMode
from ..core.pricing import DEFAULT_MARKUP_BPS, PricingPolicy
from ..storage.db import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH

CONFIG_ENV_VAR = "CREDIT_METER_CONFIG"
DB_ENV_VAR = "CREDIT_METER_DB"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Location and lock behaviour of the SQLite ledger."""
    path: str = DEFAULT_DB_PATH
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    def __post_init__(self):
        """Validate database values."""
        if not self.path or not str(self.path).strip():
            raise ValueError("database.path cannot be empty")
        if self.busy_timeout_ms <= 0:
            raise ValueError("database.busy_timeout_ms must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete credit meter configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    pricing: PricingPolicy = field(default_factory=PricingPolicy)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration.

    The file named by path, or by CREDIT_METER_CONFIG when path is None, is
    read if given. Without a file the defaults apply. CREDIT_METER_DB
    overrides database.path either way.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    raw_config: Dict[str, Any] = {}
    if path:
        raw_config = _read_yaml(path)

    config = parse_config(raw_config)

    db_override = os.environ.get(DB_ENV_VAR)
    if db_override:
        config = AppConfig(
            database=DatabaseConfig(path=db_override, busy_timeout_ms=config.database.busy_timeout_ms),
            pricing=config.pricing,
            log_level=config.log_level
        )
    return config


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def parse_config(raw_config: Dict[str, Any]) -> AppConfig:
    """Validate a raw configuration mapping.

    Unknown keys are rejected so misspelled settings never fall back to
    defaults silently.
    """
    allowed_top_keys = {'database', 'pricing', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _parse_database(_section(raw_config, 'database'))
    pricing = _parse_pricing(_section(raw_config, 'pricing'))

    logging_data = _section(raw_config, 'logging')
    _reject_unknown(logging_data, {'level'}, 'logging')
    level = str(logging_data.get('level', 'INFO')).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(_LOG_LEVELS)}")

    return AppConfig(database=database, pricing=pricing, log_level=level)


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_database(data: Dict[str, Any]) -> DatabaseConfig:
    _reject_unknown(data, {'path', 'busy_timeout_ms'}, 'database')

    busy_timeout = data.get('busy_timeout_ms', DEFAULT_BUSY_TIMEOUT_MS)
    if isinstance(busy_timeout, bool) or not isinstance(busy_timeout, int):
        raise ValueError("'database.busy_timeout_ms' must be an integer")

    path = data.get('path', DEFAULT_DB_PATH)
    if not isinstance(path, str):
        raise ValueError("'database.path' must be a string")

    return DatabaseConfig(path=path, busy_timeout_ms=busy_timeout)


def _parse_pricing(data: Dict[str, Any]) -> PricingPolicy:
    """Parse and validate the pricing section.

    Raises:
        ValueError: If a value has the wrong type or is out of range
    """
    _reject_unknown(data, {'markup_bps', 'cents_rounding', 'markup_rounding', 'min_charge_cents'}, 'pricing')

    markup_bps = data.get('markup_bps', DEFAULT_MARKUP_BPS)
    if isinstance(markup_bps, bool) or not isinstance(markup_bps, int) or markup_bps < 0:
        raise ValueError("'pricing.markup_bps' must be an integer >= 0")

    min_charge = data.get('min_charge_cents', 0)
    if isinstance(min_charge, bool) or not isinstance(min_charge, int) or min_charge < 0:
        raise ValueError("'pricing.min_charge_cents' must be an integer >= 0")

    roundings = {}
    for key, default in (('cents_rounding', RoundingMode.CEIL), ('markup_rounding', RoundingMode.ROUND)):
        value = data.get(key, default.value)
        try:
            roundings[key] = RoundingMode(str(value).lower())
        except ValueError:
            valid_modes = [mode.value for mode in RoundingMode]
            raise ValueError(f"'pricing.{key}' must be one of: {valid_modes}")

    return PricingPolicy(
        markup_bps=markup_bps,
        cents_rounding=roundings['cents_rounding'],
        markup_rounding=roundings['markup_rounding'],
        min_charge_cents=min_charge
    )
