"""
Collaborator interfaces the host application implements for the sync pipeline.

The orchestrator only talks to credential storage, the account directory,
persistence and notification delivery through these abstract classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from ..models import AnomalyBaseline, CostSnapshot, DailyCostPoint, ServiceDailyCost
from ..providers.base import Credentials


@dataclass
class AccountRef:
    """A configured cloud account of a tenant."""

    account_id: str
    provider_id: str
    name: str = ""
    is_active: bool = True
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BillingPeriod:
    """Date range a snapshot was computed for."""

    start_date: date
    end_date: date


class NotificationType(Enum):
    SYNC = "sync"
    ANOMALY = "anomaly"
    WARNING = "warning"


@dataclass
class Notification:
    tenant: str
    type: NotificationType
    payload: dict[str, Any] = field(default_factory=dict)


class CredentialStore(ABC):
    @abstractmethod
    async def get_decrypted_credentials(self, tenant: str, account_id: str) -> Credentials:
        """
        Return the decrypted credential bundle of one account.

        The bundle is used for a single account sync and must not be retained.
        """
        pass


class AccountDirectory(ABC):
    @abstractmethod
    async def list_accounts(self, tenant: str) -> list[AccountRef]:
        """Return every account configured for the tenant."""
        pass


class PersistenceSink(ABC):
    """Idempotent storage of sync results; repeated writes for a key replace earlier ones."""

    @abstractmethod
    async def save_snapshot(
        self, tenant: str, provider: str, account_id: str, period: BillingPeriod, snapshot: CostSnapshot
    ):
        pass

    @abstractmethod
    async def save_daily_points(
        self, tenant: str, provider: str, account_id: str, points: list[DailyCostPoint]
    ):
        pass

    async def save_baselines(
        self, tenant: str, provider: str, account_id: str, baselines: list[AnomalyBaseline]
    ):
        """Store baseline rows. Optional for hosts without anomaly storage."""
        return None

    async def load_daily_history(
        self, tenant: str, provider: str, account_id: str, before: date, days: int
    ) -> list[DailyCostPoint]:
        """Daily points stored before ``before``, used for outliers and forecasting."""
        return []

    async def load_service_history(
        self, tenant: str, provider: str, account_id: str, before: date, days: int
    ) -> list[ServiceDailyCost]:
        """Per-service daily costs stored before ``before``, used for baselines."""
        return []


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, notification: Notification):
        """Deliver a notification. Failures are logged by the caller and never retried."""
        pass
