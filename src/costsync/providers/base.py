"""
Abstract base provider adapter for multi-cloud cost ingestion.

Defines the interface every cloud provider adapter implements and the
factory the sync orchestrator uses to select an adapter by provider id.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from ..errors import ConfigurationError, InvalidRequestError
from ..models import Granularity, ProviderRawData, ProviderRawDetail
from ..utils.resilience import CircuitBreaker, ResilientExecutor, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Credentials = dict[str, Any]


class ProviderId(Enum):
    """Supported billing providers."""

    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    DIGITALOCEAN = "digitalocean"
    LINODE = "linode"
    VULTR = "vultr"
    IBM = "ibm"
    MONGODB = "mongodb"


class ProviderAdapter(ABC):
    """Abstract base class for provider billing adapters.

    Adapters are stateless with respect to credentials: the decrypted
    bundle is passed into each call and never kept on the instance.
    """

    provider_id: ProviderId
    display_name: str = ""
    aliases: tuple[str, ...] = ()
    granularity: Granularity = Granularity.DAILY
    required_credentials: tuple[str, ...] = ()

    def __init__(self, config: dict[str, Any] | None = None, executor: ResilientExecutor | None = None):
        """
        Initialize the adapter.

        Args:
            config: Provider-specific configuration dictionary
            executor: Resilience wrapper every upstream call goes through
        """
        self.config = dict(config or {})
        self.executor = executor or ResilientExecutor(
            CircuitBreaker(f"default/{self.provider_name}"), RetryPolicy(), provider=self.provider_name
        )

    @property
    def provider_name(self) -> str:
        return self.provider_id.value

    @property
    def today(self) -> date:
        """The sync's as-of date when configured, otherwise the system date."""
        value = self.config.get("today")
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str) and value:
            return date.fromisoformat(value)
        return date.today()

    @abstractmethod
    async def fetch(
        self, credentials: Credentials, start_date: date, end_date: date
    ) -> ProviderRawData:
        """
        Retrieve provider-native cost data for a date range.

        Args:
            credentials: Decrypted credential bundle, valid for this call only
            start_date: First date of the range (inclusive)
            end_date: Last date of the range (inclusive)

        Returns:
            ProviderRawData; empty lists when the provider reports no cost

        Raises:
            CloudProviderError: Translated provider failure
        """
        pass

    @abstractmethod
    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        """
        Retrieve the breakdown of one service for a date range.

        Args:
            credentials: Decrypted credential bundle
            service_name: Service name as reported in ProviderRawData.services
            start_date: First date of the range (inclusive)
            end_date: Last date of the range (inclusive)

        Returns:
            ProviderRawDetail with per-item costs
        """
        pass

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one upstream operation through the resilience wrapper."""
        return await self.executor.execute(operation)

    def validate_credentials(self, credentials: Credentials | None):
        """Raise ConfigurationError when required credential fields are missing."""
        if not credentials:
            raise ConfigurationError(
                f"{self.display_name or self.provider_name} credentials not found",
                provider=self.provider_name,
            )
        missing = [key for key in self.required_credentials if not credentials.get(key)]
        if missing:
            raise ConfigurationError(
                f"{self.display_name} credentials incomplete (requires {', '.join(missing)})",
                provider=self.provider_name,
            )

    def validate_date_range(self, start_date: date | datetime, end_date: date | datetime) -> tuple[date, date]:
        """
        Validate and normalize a date range.

        Raises:
            InvalidRequestError: If the range is reversed or exceeds a year
        """
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        if isinstance(end_date, datetime):
            end_date = end_date.date()

        if start_date > end_date:
            raise InvalidRequestError(
                f"Start date {start_date} must not be after end date {end_date}",
                provider=self.provider_name,
            )
        if (end_date - start_date).days > 366:
            raise InvalidRequestError("Date range cannot exceed one year", provider=self.provider_name)
        return start_date, end_date

    def empty_result(self, start_date: date, end_date: date, **kwargs) -> ProviderRawData:
        return ProviderRawData(
            provider=self.provider_name,
            start_date=start_date,
            end_date=end_date,
            granularity=self.granularity,
            **kwargs,
        )


class ProviderFactory:
    """Factory class for creating provider adapter instances."""

    _providers: dict[str, type[ProviderAdapter]] = {}
    _aliases: dict[str, str] = {}

    @classmethod
    def register_provider(cls, provider_class: type[ProviderAdapter]) -> type[ProviderAdapter]:
        """Register an adapter class under its provider id and aliases."""
        name = provider_class.provider_id.value
        cls._providers[name] = provider_class
        for alias in provider_class.aliases:
            cls._aliases[alias.lower()] = name
        return provider_class

    @classmethod
    def resolve(cls, name: str | ProviderId) -> ProviderId:
        """
        Resolve a provider id or alias to a ProviderId.

        Raises:
            InvalidRequestError: If no adapter is registered for the name
        """
        if isinstance(name, ProviderId):
            return name
        key = (name or "").lower().strip()
        key = cls._aliases.get(key, key)
        if key not in cls._providers:
            available = ", ".join(sorted(cls._providers))
            raise InvalidRequestError(f"Unknown provider '{name}'. Available providers: {available}")
        return ProviderId(key)

    @classmethod
    def create_provider(
        cls,
        name: str | ProviderId,
        config: dict[str, Any] | None = None,
        executor: ResilientExecutor | None = None,
    ) -> ProviderAdapter:
        """
        Create an adapter instance.

        Args:
            name: Provider id or alias
            config: Provider configuration
            executor: Resilience wrapper bound to the caller's (tenant, provider) breaker

        Returns:
            Adapter instance
        """
        provider_id = cls.resolve(name)
        return cls._providers[provider_id.value](config, executor)

    @classmethod
    def get_available_providers(cls) -> list[str]:
        return sorted(cls._providers)

    @classmethod
    def get_provider_class(cls, name: str | ProviderId) -> type[ProviderAdapter]:
        return cls._providers[cls.resolve(name).value]

    @classmethod
    def is_supported(cls, name: str) -> bool:
        try:
            cls.resolve(name)
        except InvalidRequestError:
            return False
        return True


def as_float(value: Any, default: float = 0.0) -> float:
    """Best-effort float parsing for provider payload fields that must be numeric."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def iter_months(start_date: date, end_date: date) -> Iterable[tuple[int, int]]:
    """Yield (year, month) for every calendar month touched by the range."""
    year, month = start_date.year, start_date.month
    while (year, month) <= (end_date.year, end_date.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1


def parse_day(value: Any) -> date | None:
    """Parse the calendar date at the start of a provider timestamp, None if unparsable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def in_range(value: Any, start_date: date, end_date: date) -> bool:
    """True for dates inside the range and for values the normalizer has to judge."""
    day = parse_day(value)
    return day is None or start_date <= day <= end_date


def month_end(day: date) -> date:
    """Last calendar day of the month containing ``day``."""
    next_month = (day.replace(day=28) + timedelta(days=4)).replace(day=1)
    return next_month - timedelta(days=1)


def billed_day(issued: Any) -> date | None:
    """Invoices issued on the 1st cover the month before: date them on its last day."""
    day = parse_day(issued)
    if day is None:
        return None
    return day - timedelta(days=1)


def includes_running_month(end_date: date, today: date | None = None) -> bool:
    """True when the range reaches into the month whose charges are not invoiced yet."""
    today = today or date.today()
    return end_date >= today.replace(day=1)
