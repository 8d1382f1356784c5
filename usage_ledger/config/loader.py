"""
Configuration management and loading.

Handles engine settings read from an optional YAML file.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from usage_ledger.core.pricing import DEFAULT_PRICES, ModelPricing

DEFAULT_DATABASE_PATH = "~/.usage-ledger/usage.db"
DEFAULT_CONFIG_PATH = "~/.usage-ledger/config.yaml"
DEFAULT_AGGREGATION_TIMEOUT_SECONDS = 120.0


class View(Enum):
    """Read-side views served by the facade."""
    OVERVIEW = "overview"
    PROJECTS = "projects"
    SESSIONS = "sessions"
    MONTHLY = "monthly"
    DAILY = "daily"
    ACTIVE = "active"


# Seconds a view's data stays fresh before the next read recomputes it
DEFAULT_REFRESH_INTERVALS: Dict[View, float] = {
    View.OVERVIEW: 30.0,
    View.PROJECTS: 60.0,
    View.SESSIONS: 60.0,
    View.MONTHLY: 300.0,
    View.DAILY: 120.0,
    View.ACTIVE: 5.0,
}

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
PRICE_FIELDS = {"input", "output", "cache_write", "cache_read"}


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    database_path: str = DEFAULT_DATABASE_PATH
    source_paths: List[str] = field(default_factory=list)
    billing_cycle_day: int = 1
    currency: str = "USD"
    exchange_rates: Dict[str, float] = field(default_factory=dict)
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)
    refresh_intervals: Dict[View, float] = field(
        default_factory=lambda: dict(DEFAULT_REFRESH_INTERVALS)
    )
    aggregation_timeout_seconds: float = DEFAULT_AGGREGATION_TIMEOUT_SECONDS
    log_level: str = "WARNING"

    def __post_init__(self):
        """Validate configuration values."""
        if not isinstance(self.billing_cycle_day, int) or not 1 <= self.billing_cycle_day <= 31:
            raise ValueError("billing_cycle_day must be an integer between 1 and 31")
        if not isinstance(self.currency, str) or len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError("currency must be a 3-letter code")
        for code, rate in self.exchange_rates.items():
            if rate <= 0:
                raise ValueError(f"exchange rate for {code} must be > 0")
        for view, seconds in self.refresh_intervals.items():
            if seconds < 0:
                raise ValueError(f"refresh interval for {view.value} must be >= 0")
        if self.aggregation_timeout_seconds <= 0:
            raise ValueError("aggregation_timeout_seconds must be > 0")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {sorted(LOG_LEVELS)}")

    @property
    def resolved_database_path(self) -> Path:
        return Path(self.database_path).expanduser()


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Without a path, the default location is used if it exists and the
    built-in defaults otherwise. An empty file also yields the defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        default_path = Path(DEFAULT_CONFIG_PATH).expanduser()
        if not default_path.exists():
            return EngineConfig()
        config_path = default_path
    else:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if not raw_config:
        return EngineConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {
        'database_path', 'source_paths', 'billing_cycle_day', 'currency',
        'exchange_rates', 'pricing', 'refresh_intervals',
        'aggregation_timeout_seconds', 'log_level'
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'database_path' in raw_config:
        kwargs['database_path'] = _require_str(raw_config['database_path'], 'database_path')

    if 'source_paths' in raw_config:
        paths = raw_config['source_paths']
        if isinstance(paths, str):
            paths = [paths]
        if not isinstance(paths, list):
            raise ValueError("'source_paths' must be a list of paths")
        kwargs['source_paths'] = [
            _require_str(p, f"source_paths[{i}]") for i, p in enumerate(paths)
        ]

    if 'billing_cycle_day' in raw_config:
        day = raw_config['billing_cycle_day']
        if isinstance(day, bool) or not isinstance(day, int):
            raise ValueError("'billing_cycle_day' must be an integer")
        kwargs['billing_cycle_day'] = day

    if 'currency' in raw_config:
        kwargs['currency'] = _require_str(raw_config['currency'], 'currency').upper()

    if 'exchange_rates' in raw_config:
        rates = _require_mapping(raw_config['exchange_rates'], 'exchange_rates')
        kwargs['exchange_rates'] = {
            str(code).upper(): _require_number(rate, f"exchange_rates.{code}")
            for code, rate in rates.items()
        }

    if 'pricing' in raw_config:
        pricing = _require_mapping(raw_config['pricing'], 'pricing')
        unknown_families = {str(f).lower() for f in pricing} - set(DEFAULT_PRICES)
        if unknown_families:
            raise ValueError(f"Unknown model families in pricing: {unknown_families}, expected one of: {sorted(DEFAULT_PRICES)}")
        kwargs['pricing'] = {
            str(family).lower(): _parse_model_pricing(data, f"pricing.{family}")
            for family, data in pricing.items()
        }

    if 'refresh_intervals' in raw_config:
        intervals = _require_mapping(raw_config['refresh_intervals'], 'refresh_intervals')
        merged = dict(DEFAULT_REFRESH_INTERVALS)
        for name, seconds in intervals.items():
            try:
                view = View(str(name).lower())
            except ValueError:
                valid_views = [v.value for v in View]
                raise ValueError(f"Unknown view '{name}' in refresh_intervals, expected one of: {valid_views}")
            merged[view] = _require_number(seconds, f"refresh_intervals.{name}")
        kwargs['refresh_intervals'] = merged

    if 'aggregation_timeout_seconds' in raw_config:
        kwargs['aggregation_timeout_seconds'] = _require_number(
            raw_config['aggregation_timeout_seconds'], 'aggregation_timeout_seconds'
        )

    if 'log_level' in raw_config:
        kwargs['log_level'] = _require_str(raw_config['log_level'], 'log_level').upper()

    return EngineConfig(**kwargs)


def _require_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value.strip()


def _require_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _require_mapping(value: Any, path: str) -> Mapping:
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _parse_model_pricing(data: Any, path: str) -> ModelPricing:
    """Parse and validate per-1M-token rates for one model family.

    Args:
        data: Mapping with input, output, cache_write and cache_read
        path: Path for error messages

    Returns:
        Validated ModelPricing

    Raises:
        ValueError: If a rate is missing, unknown or negative
    """
    data = _require_mapping(data, path)
    unknown_keys = set(data.keys()) - PRICE_FIELDS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    missing = PRICE_FIELDS - set(data.keys())
    if missing:
        raise ValueError(f"Missing required rates in {path}: {sorted(missing)}")

    rates = {}
    for name in PRICE_FIELDS:
        value = _require_number(data[name], f"{path}.{name}")
        if value < 0:
            raise ValueError(f"'{path}.{name}' must be >= 0")
        rates[name] = Decimal(str(value))
    return ModelPricing(**rates)
