"""
Data structures shared by the ingestion pipeline.

Raw models mirror what an adapter pulled from a provider and keep their
values loosely typed so the normalizer can decide what to accept. Normalized
models carry the validated, provider-independent shape handed to
persistence.
"""

import math
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ErrorKind

SERVICE_NAME_MAX_LENGTH = 200


class Granularity(Enum):
    """Finest date granularity a provider exposes."""

    DAILY = "daily"
    INVOICE = "invoice"


class RawCostRow(BaseModel):
    """One provider-native cost row, values not yet validated."""

    date: Any = None
    cost: Any = None
    is_credit: bool = False


class RawServiceCost(BaseModel):
    """Provider-native per-service total for the requested range."""

    name: Any = None
    cost: Any = None
    change_percent: Any = None
    is_credit: bool = False


class RawServiceDailyCost(BaseModel):
    """Provider-native per-service cost for one day."""

    date: Any = None
    service: Any = None
    cost: Any = None
    is_credit: bool = False


class ProviderRawData(BaseModel):
    """Everything one adapter fetch returned for one account and date range."""

    provider: str
    start_date: date
    end_date: date
    granularity: Granularity = Granularity.DAILY
    currency: str = "USD"
    daily: list[RawCostRow] = Field(default_factory=list)
    services: list[RawServiceCost] = Field(default_factory=list)
    service_daily: list[RawServiceDailyCost] = Field(default_factory=list)
    credits: Any = 0
    savings: Any = 0
    reported_total: Any = None
    fetched_at: datetime = Field(default_factory=datetime.now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency code."""
        if not v or not v.strip():
            return "USD"
        return v.upper().strip()

    @property
    def row_count(self) -> int:
        return len(self.daily) + len(self.services) + len(self.service_daily)


class ProviderRawDetail(BaseModel):
    """Breakdown of a single service (usage types, SKUs, meters)."""

    provider: str
    service_name: str
    start_date: date
    end_date: date
    currency: str = "USD"
    items: list[RawServiceCost] = Field(default_factory=list)
    daily: list[RawCostRow] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DailyCostPoint(BaseModel):
    """Total cost for one calendar date."""

    date: date
    cost: float

    @field_validator("cost")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("Cost must be a finite number")
        return v


class ServiceCost(BaseModel):
    """Cost of one service over the snapshot range."""

    name: str = Field(..., min_length=1, max_length=SERVICE_NAME_MAX_LENGTH)
    cost: float = Field(..., ge=0)
    change_percent: float = 0.0

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()[:SERVICE_NAME_MAX_LENGTH].strip()
        return v


class ServiceDailyCost(BaseModel):
    """Cost of one service on one date."""

    date: date
    service: str
    cost: float


class CostSnapshot(BaseModel):
    """Normalized cost summary of one account over one sync's date range."""

    provider: str
    start_date: date
    end_date: date
    currency: str = "USD"
    granularity: Granularity = Granularity.DAILY
    current_month: float = 0.0
    last_month: float | None = None
    forecast: float | None = None
    forecast_confidence: int | None = Field(default=None, ge=0, le=100)
    credits: float = 0.0
    savings: float = 0.0
    services: list[ServiceCost] = Field(default_factory=list)
    daily_data: list[DailyCostPoint] = Field(default_factory=list)
    service_daily: list[ServiceDailyCost] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_daily_data(self):
        """One point per date, every date inside the requested range."""
        seen = set()
        for point in self.daily_data:
            if point.date in seen:
                raise ValueError(f"Duplicate daily point for {point.date}")
            if not (self.start_date <= point.date <= self.end_date):
                raise ValueError(
                    f"Daily point {point.date} outside range {self.start_date}..{self.end_date}"
                )
            seen.add(point.date)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")


class AnomalySeverity(Enum):
    """Severity levels for a baseline deviation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyBaseline(BaseModel):
    """Rolling baseline versus actual cost for one service on one date."""

    tenant: str
    provider: str
    account_id: str
    service: str
    date: date
    baseline_cost: float
    actual_cost: float
    variance_percent: float
    severity: AnomalySeverity = AnomalySeverity.LOW


class SyncStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SyncOutcome(BaseModel):
    """Result of syncing one account."""

    account_id: str
    provider_id: str
    status: SyncStatus
    snapshot: CostSnapshot | None = None
    baselines: list[AnomalyBaseline] = Field(default_factory=list)
    issues: list[dict[str, Any]] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @classmethod
    def failure(
        cls, account_id: str, provider_id: str, error_kind: ErrorKind, message: str
    ) -> "SyncOutcome":
        return cls(
            account_id=account_id,
            provider_id=provider_id,
            status=SyncStatus.FAILED,
            error_kind=error_kind,
            message=message,
        )
