"""
Normalization and validation of raw provider cost data.

Turns the provider-native ``ProviderRawData`` an adapter returned into a
``CostSnapshot``: denylisted line items removed, numbers and dates coerced and
range-checked, one point per date, and the current/last month totals derived
from the daily series. Problems are reported as ``NormalizationIssue`` records
instead of exceptions; only an unusable payload is marked fatal.
"""

import logging
import math
import re
import statistics
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from ..models import (
    SERVICE_NAME_MAX_LENGTH,
    CostSnapshot,
    DailyCostPoint,
    ProviderRawData,
    ServiceCost,
    ServiceDailyCost,
)

logger = logging.getLogger(__name__)

DEFAULT_DENYLIST = (
    "tax",
    "taxes",
    "vat",
    "gst",
    "hst",
    "pst",
    "fee",
    "fees",
    "support",
    "refund",
    "refunds",
    "credit",
    "credits",
)

OUTLIER_SIGMA = 3.0


class IssueSeverity(Enum):
    """How much a normalization problem affects the snapshot."""

    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


class NormalizationIssue(BaseModel):
    """One problem found while normalizing a provider response."""

    severity: IssueSeverity
    field: str
    message: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "field": self.field,
            "message": self.message,
            "value": None if self.value is None else str(self.value),
        }


class LineItemFilter:
    """Case-insensitive whole-word match of line item names against a denylist."""

    def __init__(self, denylist: Iterable[str] | None = None):
        terms = [term.strip() for term in (denylist or DEFAULT_DENYLIST) if term and term.strip()]
        self.terms = tuple(terms)
        self._pattern = (
            re.compile(r"\b(" + "|".join(re.escape(term) for term in terms) + r")\b", re.IGNORECASE)
            if terms
            else None
        )

    def is_denied(self, name: Any) -> bool:
        if self._pattern is None or not isinstance(name, str):
            return False
        return self._pattern.search(name) is not None


def has_fatal_issue(issues: Iterable[NormalizationIssue]) -> bool:
    return any(issue.severity == IssueSeverity.FATAL for issue in issues)


def history_values(history: Iterable[Any] | None) -> list[float]:
    """Extract finite cost values from DailyCostPoints, dicts or plain numbers."""
    values = []
    for item in history or []:
        if isinstance(item, DailyCostPoint):
            value = item.cost
        elif isinstance(item, dict):
            value = item.get("cost")
        else:
            value = item
        try:
            value = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(value):
            values.append(value)
    return values


class CostDataNormalizer:
    """Builds validated CostSnapshots from raw provider responses."""

    def __init__(self, denylist: Iterable[str] | None = None, outlier_sigma: float = OUTLIER_SIGMA):
        """
        Initialize the normalizer.

        Args:
            denylist: Line item words excluded from services (tax, fees, credits, ...)
            outlier_sigma: Distance from the mean, in standard deviations, flagged as an outlier
        """
        self.line_filter = LineItemFilter(denylist)
        self.outlier_sigma = outlier_sigma

    def normalize(
        self,
        raw: Any,
        provider_id: str,
        *,
        as_of: date | None = None,
        history: Iterable[Any] | None = None,
    ) -> tuple[CostSnapshot, list[NormalizationIssue]]:
        """
        Normalize one raw provider response.

        Args:
            raw: Adapter output, or its serialized form as stored in the cache
            provider_id: Provider the data came from
            as_of: Date whose calendar month is the "current month"; defaults to the range end
            history: The account's recent daily costs, used for outlier detection

        Returns:
            (snapshot, issues). The snapshot is always present; an issue with
            FATAL severity means it must not be persisted.
        """
        issues: list[NormalizationIssue] = []

        if isinstance(raw, dict):
            try:
                raw = ProviderRawData.model_validate(raw)
            except ValidationError as e:
                logger.error(f"Unparsable {provider_id} payload: {e.error_count()} validation errors")
                return self._unusable(
                    provider_id, as_of, issues, f"Raw payload could not be parsed: {e.errors()[0].get('msg')}"
                )
        elif not isinstance(raw, ProviderRawData):
            logger.error(f"Unusable {provider_id} payload of type {type(raw).__name__}")
            return self._unusable(provider_id, as_of, issues, f"Raw payload has unexpected type {type(raw).__name__}")

        start_date, end_date = raw.start_date, raw.end_date
        as_of = as_of or end_date

        daily_data = self._normalize_daily(raw, issues)
        services = self._normalize_services(raw, issues)
        service_daily = self._normalize_service_daily(raw, issues)
        self._flag_outliers(daily_data, history, issues)
        self._check_reported_total(raw, daily_data, issues)

        current_month = sum(
            point.cost for point in daily_data if (point.date.year, point.date.month) == (as_of.year, as_of.month)
        )
        last_month = self._last_month_total(daily_data, start_date, end_date, as_of)

        if raw.row_count and not daily_data and not services and not service_daily:
            logger.error(f"Every row from {provider_id} was rejected ({raw.row_count} rows)")
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.FATAL,
                    field="payload",
                    message=f"All {raw.row_count} rows were rejected",
                )
            )

        snapshot = CostSnapshot(
            provider=provider_id,
            start_date=start_date,
            end_date=end_date,
            currency=raw.currency,
            granularity=raw.granularity,
            current_month=current_month,
            last_month=last_month,
            credits=self._amount(raw.credits, "credits", issues),
            savings=self._amount(raw.savings, "savings", issues),
            services=services,
            daily_data=daily_data,
            service_daily=service_daily,
        )

        if issues:
            logger.info(
                f"Normalized {provider_id} data with {len(issues)} issues "
                f"({sum(1 for issue in issues if issue.severity != IssueSeverity.INFO)} warnings or worse)"
            )
        return snapshot, issues

    @staticmethod
    def _unusable(
        provider_id: str, as_of: date | None, issues: list[NormalizationIssue], message: str
    ) -> tuple[CostSnapshot, list[NormalizationIssue]]:
        issues.append(NormalizationIssue(severity=IssueSeverity.FATAL, field="payload", message=message))
        fallback = as_of or date.today()
        return CostSnapshot(provider=provider_id, start_date=fallback, end_date=fallback), issues

    def _normalize_daily(self, raw: ProviderRawData, issues: list[NormalizationIssue]) -> list[DailyCostPoint]:
        totals: dict[date, float] = defaultdict(float)
        for row in raw.daily:
            day = self._parse_date(row.date, raw.start_date, raw.end_date, "daily.date", issues)
            cost = self._parse_cost(row.cost, row.is_credit, "daily.cost", issues)
            if day is None or cost is None:
                continue
            if day in totals:
                issues.append(
                    NormalizationIssue(
                        severity=IssueSeverity.INFO,
                        field="daily.date",
                        message="Duplicate date merged",
                        value=day,
                    )
                )
            totals[day] += cost
        return [DailyCostPoint(date=day, cost=cost) for day, cost in sorted(totals.items())]

    def _normalize_services(self, raw: ProviderRawData, issues: list[NormalizationIssue]) -> list[ServiceCost]:
        totals: dict[str, float] = {}
        changes: dict[str, float] = {}
        for row in raw.services:
            name = self._service_name(row.name, row.is_credit, "services.name", issues)
            if name is None:
                continue
            cost = self._parse_cost(row.cost, False, "services.cost", issues)
            if cost is None:
                continue
            totals[name] = totals.get(name, 0.0) + cost
            try:
                change = float(row.change_percent) if row.change_percent is not None else 0.0
            except (TypeError, ValueError):
                change = 0.0
            changes[name] = change if math.isfinite(change) else 0.0

        return [
            ServiceCost(name=name, cost=cost, change_percent=changes[name])
            for name, cost in sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        ]

    def _normalize_service_daily(
        self, raw: ProviderRawData, issues: list[NormalizationIssue]
    ) -> list[ServiceDailyCost]:
        totals: dict[tuple[date, str], float] = defaultdict(float)
        for row in raw.service_daily:
            name = self._service_name(row.service, row.is_credit, "service_daily.service", issues)
            if name is None:
                continue
            day = self._parse_date(row.date, raw.start_date, raw.end_date, "service_daily.date", issues)
            cost = self._parse_cost(row.cost, False, "service_daily.cost", issues)
            if day is None or cost is None:
                continue
            totals[(day, name)] += cost
        return [
            ServiceDailyCost(date=day, service=name, cost=cost) for (day, name), cost in sorted(totals.items())
        ]

    def _service_name(
        self, value: Any, is_credit: bool, field: str, issues: list[NormalizationIssue]
    ) -> str | None:
        if not isinstance(value, str) or not value.strip():
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING, field=field, message="Missing service name", value=value
                )
            )
            return None
        name = value.strip()
        if is_credit or self.line_filter.is_denied(name):
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.INFO, field=field, message="Excluded non-service line item", value=name
                )
            )
            return None
        if len(name) > SERVICE_NAME_MAX_LENGTH:
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING,
                    field=field,
                    message=f"Service name truncated to {SERVICE_NAME_MAX_LENGTH} characters",
                    value=name[:40],
                )
            )
            name = name[:SERVICE_NAME_MAX_LENGTH].strip()
        return name

    def _parse_cost(
        self, value: Any, is_credit: bool, field: str, issues: list[NormalizationIssue]
    ) -> float | None:
        cost = _to_float(value)
        if cost is None:
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING, field=field, message="Unparsable cost value", value=value
                )
            )
            return None
        if not math.isfinite(cost):
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING, field=field, message="Non-finite cost rejected", value=value
                )
            )
            return None
        if cost < 0 and not is_credit:
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING,
                    field=field,
                    message="Negative cost on a row not marked as credit",
                    value=value,
                )
            )
            return None
        return cost

    def _parse_date(
        self, value: Any, start_date: date, end_date: date, field: str, issues: list[NormalizationIssue]
    ) -> date | None:
        day = _to_date(value)
        if day is None:
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING, field=field, message="Invalid ISO-8601 date", value=value
                )
            )
            return None
        if not (start_date <= day <= end_date):
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING,
                    field=field,
                    message=f"Date outside requested range {start_date}..{end_date}",
                    value=day,
                )
            )
            return None
        return day

    def _amount(self, value: Any, field: str, issues: list[NormalizationIssue]) -> float:
        amount = _to_float(value)
        if amount is None or not math.isfinite(amount):
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING, field=field, message="Invalid amount ignored", value=value
                )
            )
            return 0.0
        return abs(amount)

    def _flag_outliers(
        self, daily_data: list[DailyCostPoint], history: Iterable[Any] | None, issues: list[NormalizationIssue]
    ):
        """Flag, never drop, points far from the account's own recent mean."""
        values = history_values(history) + [point.cost for point in daily_data]
        if len(values) < 3:
            return
        mean = statistics.fmean(values)
        std_dev = statistics.pstdev(values)
        if std_dev == 0:
            return
        for point in daily_data:
            if abs(point.cost - mean) > self.outlier_sigma * std_dev:
                logger.warning(f"Outlier daily cost {point.cost:.2f} on {point.date} (mean {mean:.2f})")
                issues.append(
                    NormalizationIssue(
                        severity=IssueSeverity.WARNING,
                        field="daily.cost",
                        message=f"Value more than {self.outlier_sigma:g} standard deviations from the mean",
                        value=point.cost,
                    )
                )

    def _check_reported_total(
        self, raw: ProviderRawData, daily_data: list[DailyCostPoint], issues: list[NormalizationIssue]
    ):
        reported = _to_float(raw.reported_total)
        if reported is None or not math.isfinite(reported):
            return
        computed = sum(point.cost for point in daily_data)
        if abs(computed - reported) > max(0.01, abs(reported) * 0.01):
            issues.append(
                NormalizationIssue(
                    severity=IssueSeverity.WARNING,
                    field="reported_total",
                    message=f"Provider total {reported:.2f} differs from daily sum {computed:.2f}",
                    value=reported,
                )
            )

    @staticmethod
    def _last_month_total(
        daily_data: list[DailyCostPoint], start_date: date, end_date: date, as_of: date
    ) -> float | None:
        """Sum of the previous calendar month, only when the range covers all of it."""
        last_day = as_of.replace(day=1) - timedelta(days=1)
        first_day = last_day.replace(day=1)
        if start_date > first_day or end_date < last_day:
            return None
        return sum(point.cost for point in daily_data if first_day <= point.date <= last_day)


def normalize(
    raw: Any,
    provider_id: str,
    *,
    as_of: date | None = None,
    history: Iterable[Any] | None = None,
    denylist: Iterable[str] | None = None,
) -> tuple[CostSnapshot, list[NormalizationIssue]]:
    """Normalize one raw provider response; see CostDataNormalizer.normalize."""
    return CostDataNormalizer(denylist).normalize(raw, provider_id, as_of=as_of, history=history)


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(Decimal(value.strip()))
        except (InvalidOperation, ValueError):
            return None
    return None


def _to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None
