"""
Configuration management for the cost ingestion pipeline.

Uses dynaconf for flexible configuration with YAML files and environment overrides.
"""

import logging
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf, Validator

from ..utils.resilience import RetryPolicy

logger = logging.getLogger(__name__)

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

# Initialize dynaconf with multiple configuration sources
settings = Dynaconf(
    envvar_prefix="COSTSYNC",
    settings_files=[
        str(CONFIG_DIR / "config.yaml"),  # Base configuration
        str(CONFIG_DIR / "config.local.yaml"),  # Local overrides (git-ignored)
        str(CONFIG_DIR / ".secrets.yaml"),  # Secrets file (git-ignored)
    ],
    environments=False,
    load_dotenv=True,
    merge_enabled=True,
    envvar_separator="__",  # Support nested config via COSTSYNC__SYNC__MAX_WORKERS=8
    validators=[
        Validator("resilience.retry.max_attempts", gte=1),
        Validator("resilience.retry.base_delay", gte=0),
        Validator("resilience.retry.max_delay", gte=0),
        Validator("resilience.retry.timeout", gt=0),
        Validator("resilience.circuit_breaker.failure_threshold", gte=1),
        Validator("resilience.circuit_breaker.reset_timeout", gte=0),
        Validator("resilience.circuit_breaker.half_open_max_calls", gte=1),
        Validator("cache.ttl", gte=1),
        Validator("cache.type", is_in=["memory", "disk"]),
        Validator("sync.max_workers", gte=1),
        Validator("sync.account_timeout", gt=0),
        Validator("sync.lookback_days", gte=1),
        Validator("anomaly.variance_threshold", gte=0),
        Validator("anomaly.window_days", gte=1),
        Validator("anomaly.recent_days", gte=1),
    ],
)

DEFAULTS: dict[str, dict[str, Any]] = {
    "resilience": {
        "retry": {"max_attempts": 3, "base_delay": 1.0, "max_delay": 30.0, "timeout": 30.0},
        "circuit_breaker": {"failure_threshold": 5, "reset_timeout": 60.0, "half_open_max_calls": 3},
    },
    "cache": {"enabled": True, "type": "memory", "ttl": 3600, "max_entries": 5000, "stripes": 16},
    "forecast": {"window": 30, "decay": 0.95, "min_points": 3, "fallback_confidence": 15, "dampening_ratio": 5.0},
    "anomaly": {"variance_threshold": 20.0, "window_days": 30, "recent_days": 7},
    "sync": {"max_workers": 4, "account_timeout": 35.0, "lookback_days": 30, "history_days": 60},
    "normalizer": {},
    "providers": {},
}


def _merged(defaults: dict[str, Any], values: Any) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in dict(values or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merged(merged[key], value)
        else:
            merged[key] = value
    return merged


class PipelineConfig:
    """Configuration wrapper exposing each section as a plain dict with defaults applied."""

    def __init__(self, source: Dynaconf | dict[str, Any] | None = None):
        self.settings = settings if source is None else source
        self._validate_config()

    def _validate_config(self):
        """Validate the configuration on initialization."""
        if not isinstance(self.settings, Dynaconf):
            return
        try:
            self.settings.validators.validate()
        except Exception as e:
            logger.warning(f"Configuration validation warning: {e}")

    def _section(self, name: str) -> dict[str, Any]:
        value = self.settings.get(name, {}) if self.settings is not None else {}
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        return _merged(DEFAULTS.get(name, {}), value)

    @property
    def resilience(self) -> dict[str, Any]:
        """Retry and circuit breaker settings."""
        return self._section("resilience")

    @property
    def cache(self) -> dict[str, Any]:
        """Response cache configuration."""
        return self._section("cache")

    @property
    def forecast(self) -> dict[str, Any]:
        return self._section("forecast")

    @property
    def anomaly(self) -> dict[str, Any]:
        return self._section("anomaly")

    @property
    def sync(self) -> dict[str, Any]:
        """Worker pool, timeouts and date range of tenant syncs."""
        return self._section("sync")

    @property
    def normalizer(self) -> dict[str, Any]:
        return self._section("normalizer")

    @property
    def providers(self) -> dict[str, Any]:
        return self._section("providers")

    def get_provider_config(self, provider: str) -> dict[str, Any]:
        """Get configuration for a specific provider."""
        return dict(self.providers.get(provider, {}) or {})

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.resilience.get("retry"))

    def as_dict(self) -> dict[str, Any]:
        """All sections as the plain dict the orchestrator accepts."""
        return {name: self._section(name) for name in DEFAULTS}


# Global configuration instance
config = PipelineConfig()


def get_config() -> PipelineConfig:
    """Get the global configuration instance."""
    return config


def reload_config() -> PipelineConfig:
    """Reload configuration from files."""
    global config
    settings.reload()
    config = PipelineConfig()
    return config
