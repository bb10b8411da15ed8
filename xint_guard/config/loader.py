"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import math
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from xint_guard.core.pricing import EndpointPricing
from xint_guard.storage.db import DEFAULT_DB_PATH

DB_PATH_ENV = "XINT_GUARD_DB"
X_TOKEN_ENV = "X_BEARER_TOKEN"
XAI_KEY_ENV = "XAI_API_KEY"

DEFAULT_TTLS = {
    "fast": 300.0,
    "standard": 900.0,
    "profile": 3600.0,
    "trends": 900.0,
    "analysis": 3600.0,
}


@dataclass(frozen=True)
class BudgetConfig:
    """Daily spending limit used until one is set explicitly."""
    daily_limit: Decimal = Decimal("5.00")
    enforce: bool = True  # False records spend without admission checks

    def __post_init__(self):
        """Validate budget values are non-negative."""
        if self.daily_limit < 0:
            raise ValueError("daily_limit cannot be negative")


@dataclass(frozen=True)
class StorageConfig:
    """Where ledger and cache data live."""
    path: str = DEFAULT_DB_PATH
    keep_days: int = 90

    def __post_init__(self):
        if not self.path:
            raise ValueError("storage path cannot be empty")
        if self.keep_days < 30:
            raise ValueError("keep_days must be >= 30 so month reports stay complete")


@dataclass(frozen=True)
class CacheConfig:
    """Cache TTLs in seconds, per request category."""
    ttl: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TTLS))
    default_ttl: float = 900.0

    def __post_init__(self):
        for category, seconds in self.ttl.items():
            if seconds < 0:
                raise ValueError(f"ttl for '{category}' cannot be negative")
        if self.default_ttl < 0:
            raise ValueError("default_ttl cannot be negative")

    def ttl_for(self, category: str) -> float:
        return float(self.ttl.get(category, self.default_ttl))


@dataclass(frozen=True)
class WatchConfig:
    """Polling limits for watch sessions."""
    min_interval: float = 10.0
    max_consecutive_failures: int = 5
    max_backoff: float = 900.0
    window_size: int = 1000
    max_results: int = 10

    def __post_init__(self):
        if self.min_interval <= 0:
            raise ValueError("min_interval must be > 0")
        if self.max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures cannot be negative")
        if self.max_backoff <= 0:
            raise ValueError("max_backoff must be > 0")
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if not 10 <= self.max_results <= 100:
            raise ValueError("max_results must be between 10 and 100")


@dataclass(frozen=True)
class WebhookConfig:
    """Retry policy for webhook delivery."""
    max_attempts: int = 3
    timeout: float = 10.0
    backoff_base: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    pricing: Dict[str, EndpointPricing] = field(default_factory=dict)


_SECTION_KEYS = {
    "budget": {"daily_limit", "enforce"},
    "storage": {"path", "keep_days"},
    "cache": {"ttl", "default_ttl"},
    "watch": {"min_interval", "max_consecutive_failures", "max_backoff", "window_size", "max_results"},
    "webhook": {"max_attempts", "timeout", "backoff_base"},
    "pricing": None,  # free-form endpoint names
}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected spend. With no path, defaults are used. The
    `XINT_GUARD_DB` environment variable overrides the storage path.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    budget_data = sections["budget"]
    budget = BudgetConfig(
        daily_limit=_decimal(budget_data.get("daily_limit", BudgetConfig.daily_limit), "budget.daily_limit"),
        enforce=_flag(budget_data.get("enforce", BudgetConfig.enforce), "budget.enforce")
    )

    storage_data = sections["storage"]
    storage = StorageConfig(
        path=os.environ.get(DB_PATH_ENV) or str(storage_data.get("path", DEFAULT_DB_PATH)),
        keep_days=int(storage_data.get("keep_days", StorageConfig.keep_days))
    )

    cache_data = sections["cache"]
    ttl_data = cache_data.get("ttl", {})
    if not isinstance(ttl_data, dict):
        raise ValueError("'cache.ttl' must be a dictionary")
    ttls = dict(DEFAULT_TTLS)
    ttls.update({str(k): _number(v, f"cache.ttl.{k}") for k, v in ttl_data.items()})
    cache = CacheConfig(
        ttl=ttls,
        default_ttl=_number(cache_data.get("default_ttl", CacheConfig.default_ttl), "cache.default_ttl")
    )

    watch_data = sections["watch"]
    watch = WatchConfig(
        min_interval=_number(watch_data.get("min_interval", WatchConfig.min_interval), "watch.min_interval"),
        max_consecutive_failures=int(watch_data.get("max_consecutive_failures", WatchConfig.max_consecutive_failures)),
        max_backoff=_number(watch_data.get("max_backoff", WatchConfig.max_backoff), "watch.max_backoff"),
        window_size=int(watch_data.get("window_size", WatchConfig.window_size)),
        max_results=int(watch_data.get("max_results", WatchConfig.max_results))
    )

    webhook_data = sections["webhook"]
    webhook = WebhookConfig(
        max_attempts=int(webhook_data.get("max_attempts", WebhookConfig.max_attempts)),
        timeout=_number(webhook_data.get("timeout", WebhookConfig.timeout), "webhook.timeout"),
        backoff_base=_number(webhook_data.get("backoff_base", WebhookConfig.backoff_base), "webhook.backoff_base")
    )

    pricing = {
        str(endpoint): _parse_endpoint_pricing(data, f"pricing.{endpoint}")
        for endpoint, data in sections["pricing"].items()
    }

    return AppConfig(
        budget=budget,
        storage=storage,
        cache=cache,
        watch=watch,
        webhook=webhook,
        pricing=pricing
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    allowed = _SECTION_KEYS[name]
    if allowed is not None:
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValueError(f"Unknown {name} keys: {unknown}")
    return data


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if not math.isfinite(value):
        raise ValueError(f"'{path}' must be a finite number")
    return float(value)


def _flag(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false")
    return value


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not result.is_finite():
        raise ValueError(f"'{path}' must be a finite number")
    return result


def _parse_endpoint_pricing(data: Any, path: str) -> EndpointPricing:
    """Parse and validate an endpoint price override.

    Raises:
        ValueError: If the override is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {"per_request", "per_item"}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    if not data:
        raise ValueError(f"'{path}' must set per_request or per_item")

    per_request = _decimal(data.get("per_request", 0), f"{path}.per_request")
    per_item = _decimal(data.get("per_item", 0), f"{path}.per_item")
    if per_request < 0 or per_item < 0:
        raise ValueError(f"Prices in {path} cannot be negative")

    return EndpointPricing(per_request=per_request, per_item=per_item)


def x_bearer_token() -> Optional[str]:
    """X API bearer token from the environment, if set."""
    token = os.environ.get(X_TOKEN_ENV, "").strip()
    return token or None


def xai_api_key() -> Optional[str]:
    """xAI API key from the environment, if set."""
    key = os.environ.get(XAI_KEY_ENV, "").strip()
    return key or None
