"""
Pytest configuration and shared fixtures for costsync tests.

Provides fake implementations of the host collaborators (account directory,
credential store, persistence, notifier) and a fake adapter factory so the
orchestrator can be exercised without any provider API.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Any

import pytest

from costsync.models import (
    DailyCostPoint,
    ProviderRawData,
    ProviderRawDetail,
    RawCostRow,
    RawServiceCost,
    RawServiceDailyCost,
    ServiceDailyCost,
)
from costsync.providers import ProviderAdapter, ProviderFactory
from costsync.sync.interfaces import (
    AccountDirectory,
    AccountRef,
    CredentialStore,
    NotificationSink,
    PersistenceSink,
)
from costsync.utils.resilience import CircuitBreaker, ResilientExecutor, RetryPolicy

AS_OF = datetime(2024, 3, 15, 12, 0, 0)

Behaviour = Callable[[date, date], Awaitable[ProviderRawData]]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def days_between(start_date: date, end_date: date) -> list[date]:
    return [start_date + timedelta(days=i) for i in range((end_date - start_date).days + 1)]


def make_raw(
    provider: str,
    start_date: date,
    end_date: date,
    daily_cost: float | Callable[[date], float] = 100.0,
    shares: dict[str, float] | None = None,
) -> ProviderRawData:
    """Raw daily data with one row per day, split across services by share."""
    shares = shares or {"Compute": 0.7, "Storage": 0.3}
    daily = []
    service_daily = []
    service_totals: dict[str, float] = {name: 0.0 for name in shares}
    for day in days_between(start_date, end_date):
        cost = daily_cost(day) if callable(daily_cost) else daily_cost
        daily.append(RawCostRow(date=day.isoformat(), cost=cost))
        for name, share in shares.items():
            service_daily.append(RawServiceDailyCost(date=day.isoformat(), service=name, cost=cost * share))
            service_totals[name] += cost * share
    return ProviderRawData(
        provider=provider,
        start_date=start_date,
        end_date=end_date,
        daily=daily,
        services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
        service_daily=service_daily,
    )


def steady(provider: str, daily_cost: float | Callable[[date], float] = 100.0) -> Behaviour:
    """Behaviour returning a steady daily series for whatever range is asked for."""

    async def behaviour(start_date: date, end_date: date) -> ProviderRawData:
        return make_raw(provider, start_date, end_date, daily_cost)

    return behaviour


def failing(error: Exception) -> Behaviour:
    async def behaviour(start_date: date, end_date: date) -> ProviderRawData:
        raise error

    return behaviour


class FakeAccountDirectory(AccountDirectory):
    def __init__(self, accounts: list[AccountRef] | None = None, error: Exception | None = None):
        self.accounts = list(accounts or [])
        self.error = error

    async def list_accounts(self, tenant: str) -> list[AccountRef]:
        if self.error is not None:
            raise self.error
        return list(self.accounts)


class FakeCredentialStore(CredentialStore):
    def __init__(self):
        self.requests: list[tuple[str, str]] = []

    async def get_decrypted_credentials(self, tenant: str, account_id: str) -> dict[str, Any]:
        self.requests.append((tenant, account_id))
        return {"account_id": account_id, "api_token": f"token-{account_id}"}


class FakePersistence(PersistenceSink):
    def __init__(self):
        self.snapshots: dict[tuple[str, str, str], Any] = {}
        self.daily_points: dict[tuple[str, str, str], list[DailyCostPoint]] = {}
        self.baselines: dict[tuple[str, str, str], list] = {}
        self.history: list[DailyCostPoint] = []
        self.service_history: list[ServiceDailyCost] = []
        self.fail_snapshot_for: set[str] = set()

    async def save_snapshot(self, tenant, provider, account_id, period, snapshot):
        if account_id in self.fail_snapshot_for:
            raise RuntimeError("database unavailable")
        self.snapshots[(tenant, provider, account_id)] = (period, snapshot)

    async def save_daily_points(self, tenant, provider, account_id, points):
        self.daily_points[(tenant, provider, account_id)] = list(points)

    async def save_baselines(self, tenant, provider, account_id, baselines):
        self.baselines[(tenant, provider, account_id)] = list(baselines)

    async def load_daily_history(self, tenant, provider, account_id, before, days):
        return [point for point in self.history if point.date < before]

    async def load_service_history(self, tenant, provider, account_id, before, days):
        return [row for row in self.service_history if row.date < before]


class FakeNotifier(NotificationSink):
    def __init__(self, error: Exception | None = None):
        self.notifications = []
        self.error = error

    async def notify(self, notification):
        if self.error is not None:
            raise self.error
        self.notifications.append(notification)

    def of_type(self, notification_type):
        return [n for n in self.notifications if n.type == notification_type]


class FakeAdapter(ProviderAdapter):
    """Adapter whose responses are scripted per account id."""

    def __init__(self, provider_id, factory: "FakeFactory", config=None, executor=None):
        self.provider_id = provider_id
        super().__init__(config, executor)
        self.factory = factory

    async def fetch(self, credentials, start_date, end_date):
        account_id = credentials["account_id"]
        behaviour = self.factory.behaviours[account_id]

        async def operation():
            self.factory.fetch_calls.append((account_id, start_date, end_date))
            self.factory.in_flight += 1
            self.factory.max_in_flight = max(self.factory.max_in_flight, self.factory.in_flight)
            try:
                return await behaviour(start_date, end_date)
            finally:
                self.factory.in_flight -= 1

        return await self.call(operation)

    async def fetch_service_detail(self, credentials, service_name, start_date, end_date):
        account_id = credentials["account_id"]

        async def operation():
            self.factory.detail_calls.append((account_id, service_name, start_date, end_date))
            return ProviderRawDetail(
                provider=self.provider_name,
                service_name=service_name,
                start_date=start_date,
                end_date=end_date,
                items=[RawServiceCost(name=f"{service_name} usage", cost=42.0)],
            )

        return await self.call(operation)


class FakeFactory:
    """Stands in for ProviderFactory; resolves names with the real alias table."""

    def __init__(self):
        self.behaviours: dict[str, Behaviour] = {}
        self.fetch_calls: list[tuple[str, date, date]] = []
        self.detail_calls: list[tuple[str, str, date, date]] = []
        self.configs: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def resolve(self, name):
        return ProviderFactory.resolve(name)

    def create_provider(self, name, config=None, executor=None):
        self.configs.append(dict(config or {}))
        return FakeAdapter(ProviderFactory.resolve(name), self, config, executor)


async def no_sleep(delay: float):
    await asyncio.sleep(0)


@pytest.fixture
def as_of() -> datetime:
    return AS_OF


@pytest.fixture
def fake_factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def credential_store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def sample_raw() -> ProviderRawData:
    """Two weeks of steady AWS data in March 2024."""
    return make_raw("aws", date(2024, 3, 1), date(2024, 3, 14))


@pytest.fixture
def executor() -> ResilientExecutor:
    """Executor with three attempts and no real backoff."""
    return ResilientExecutor(
        CircuitBreaker("test/provider"), RetryPolicy(max_attempts=3, base_delay=0.0), sleep=no_sleep
    )


@pytest.fixture
def single_attempt() -> ResilientExecutor:
    return ResilientExecutor(CircuitBreaker("test/provider"), RetryPolicy(max_attempts=1), sleep=no_sleep)
