"""
Month-end forecasting for normalized cost snapshots.

The current-month forecast is an exponentially weighted linear regression
over the most recent daily points, scored with a 0-100 confidence built from
data quantity, regression fit and cost stability. ``project_months`` adds a
longer-range monthly projection by double exponential smoothing.
"""

import calendar
import logging
import math
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from pydantic import BaseModel

from ..models import CostSnapshot, DailyCostPoint, Granularity

logger = logging.getLogger(__name__)

# backfill(start, end) returns the previous month's total, or None if unavailable
Backfill = Callable[[date, date], Awaitable[float | None]]


@dataclass(frozen=True)
class ForecastResult:
    forecast: float
    confidence: int


class MonthlyProjection(BaseModel):
    """Projected total for one future calendar month with a 95% interval."""

    month: str
    forecast: float
    confidence_low: float
    confidence_high: float


class ForecastEnhancer:
    """Fills ``last_month`` and ``forecast`` on a CostSnapshot."""

    def __init__(
        self,
        window: int = 30,
        decay: float = 0.95,
        min_points: int = 3,
        fallback_confidence: int = 15,
        dampening_ratio: float = 5.0,
    ):
        self.window = window
        self.decay = decay
        self.min_points = min_points
        self.fallback_confidence = fallback_confidence
        self.dampening_ratio = dampening_ratio

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "ForecastEnhancer":
        config = config or {}
        return cls(
            window=int(config.get("window", 30)),
            decay=float(config.get("decay", 0.95)),
            min_points=int(config.get("min_points", 3)),
            fallback_confidence=int(config.get("fallback_confidence", 15)),
            dampening_ratio=float(config.get("dampening_ratio", 5.0)),
        )

    async def enhance(
        self,
        snapshot: CostSnapshot,
        history: Iterable[DailyCostPoint] | None = None,
        *,
        as_of: date | None = None,
        backfill: Backfill | None = None,
    ) -> CostSnapshot:
        """
        Return a copy of the snapshot with ``last_month`` and ``forecast`` filled if absent.

        Args:
            snapshot: Normalized snapshot
            history: Earlier daily points of the account, prepended to the snapshot's series;
                ignored for invoice-granularity snapshots, which fall back to the daily average
            as_of: Day the forecast is made on; defaults to the snapshot's end date
            backfill: Coroutine fetching the previous month's total when the
                snapshot's range does not cover it. Failures leave ``last_month`` None.
        """
        as_of = as_of or snapshot.end_date
        updates: dict[str, Any] = {}

        if snapshot.last_month is None and backfill is not None:
            last_day = as_of.replace(day=1) - timedelta(days=1)
            first_day = last_day.replace(day=1)
            try:
                updates["last_month"] = await backfill(first_day, last_day)
            except Exception as e:
                logger.warning(
                    f"Failed to backfill last month ({first_day}..{last_day}) for {snapshot.provider}: {e}"
                )

        if snapshot.forecast is None:
            if snapshot.granularity == Granularity.INVOICE:
                # invoice points are monthly totals, not days
                series = []
            else:
                series = merge_series(history, snapshot.daily_data)
            result = self.calculate_forecast(series, snapshot.current_month, as_of)
            updates["forecast"] = result.forecast
            updates["forecast_confidence"] = result.confidence

        if not updates:
            return snapshot
        return snapshot.model_copy(update=updates)

    def calculate_forecast(
        self, daily: Iterable[DailyCostPoint], current_month: float, as_of: date
    ) -> ForecastResult:
        """
        Forecast the month-end total for the month containing ``as_of``.

        Args:
            daily: Daily points, oldest first
            current_month: Month-to-date total
            as_of: Day the forecast is made on (counted as elapsed)

        Returns:
            ForecastResult with the forecast and a 0-100 confidence
        """
        days_in_month = calendar.monthrange(as_of.year, as_of.month)[1]
        days_elapsed = as_of.day
        days_remaining = days_in_month - days_elapsed

        if days_remaining <= 0:
            return ForecastResult(forecast=current_month, confidence=100)

        recent = [point.cost for point in list(daily)[-self.window:] if point.cost >= 0]
        if len(recent) < self.min_points:
            return ForecastResult(
                forecast=current_month / days_elapsed * days_in_month,
                confidence=self.fallback_confidence,
            )

        n = len(recent)
        weights = [self.decay ** (n - 1 - i) for i in range(n)]
        sum_w = sum(weights)
        sum_wx = sum(w * i for i, w in enumerate(weights))
        sum_wy = sum(w * y for w, y in zip(weights, recent))
        sum_wxy = sum(w * i * y for i, (w, y) in enumerate(zip(weights, recent)))
        sum_wx2 = sum(w * i * i for i, w in enumerate(weights))

        denominator = sum_w * sum_wx2 - sum_wx * sum_wx
        if abs(denominator) < 1e-10:
            slope = 0.0
            intercept = sum_wy / sum_w
        else:
            slope = (sum_w * sum_wxy - sum_wx * sum_wy) / denominator
            intercept = (sum_wy - slope * sum_wx) / sum_w

        last_index = n - 1
        projected_remaining = sum(
            max(0.0, slope * (last_index + i) + intercept) for i in range(1, days_remaining + 1)
        )
        forecast = current_month + projected_remaining

        mean_y = sum_wy / sum_w
        ss_tot = sum(w * (y - mean_y) ** 2 for w, y in zip(weights, recent))
        ss_res = sum(w * (y - (slope * i + intercept)) ** 2 for i, (w, y) in enumerate(zip(weights, recent)))
        # a flat series is fitted exactly
        r_squared = max(0.0, 1 - ss_res / ss_tot) if ss_tot > 1e-12 else 1.0

        mean = sum(recent) / n
        variance = sum((y - mean) ** 2 for y in recent) / n
        cv = math.sqrt(variance) / mean if mean > 0 else 1.0

        data_score = min(1.0, n / 20) * 30
        fit_score = r_squared * 40
        stability_score = max(0.0, 1 - cv) * 30
        confidence = round(min(100.0, max(0.0, data_score + fit_score + stability_score)))

        if forecast < 0:
            forecast = current_month
        elif current_month > 0 and forecast > current_month * self.dampening_ratio:
            ratio = forecast / current_month
            dampened = current_month * (self.dampening_ratio + math.log(ratio / self.dampening_ratio))
            logger.warning(
                f"Forecast dampened from {forecast:.2f} to {dampened:.2f} "
                f"(current month {current_month:.2f}, slope {slope:.4f})"
            )
            forecast = dampened

        return ForecastResult(forecast=forecast, confidence=int(confidence))

    def project_months(
        self, daily: Iterable[DailyCostPoint], months: int = 6, as_of: date | None = None
    ) -> list[MonthlyProjection]:
        """
        Project monthly totals for the months after ``as_of``.

        Needs at least 14 daily points; returns an empty list otherwise.
        """
        points = list(daily)
        if len(points) < 14:
            return []
        as_of = as_of or points[-1].date

        monthly: dict[str, float] = defaultdict(float)
        for point in points:
            monthly[point.date.strftime("%Y-%m")] += point.cost
        totals = [total for _, total in sorted(monthly.items())]

        if len(totals) < 2:
            monthly_avg = sum(point.cost for point in points) / len(points) * 30
            return _projection_months(as_of, months, monthly_avg, 0.0, monthly_avg * 0.15)

        alpha = 0.4
        level = totals[0]
        trend = (totals[-1] - totals[0]) / (len(totals) - 1)
        for total in totals[1:]:
            previous_level = level
            level = alpha * total + (1 - alpha) * (level + trend)
            trend = 0.3 * (level - previous_level) + 0.7 * trend

        residuals = [0.0] + [total - (totals[0] + trend * i) for i, total in enumerate(totals) if i > 0]
        residual_std = math.sqrt(sum(r * r for r in residuals) / max(len(residuals) - 1, 1))
        return _projection_months(as_of, months, level, trend, residual_std)


def merge_series(
    history: Iterable[DailyCostPoint] | None, daily: Iterable[DailyCostPoint]
) -> list[DailyCostPoint]:
    """Combine history and current points by date, current values winning, oldest first."""
    by_date = {point.date: point for point in history or []}
    by_date.update({point.date: point for point in daily})
    return [by_date[day] for day in sorted(by_date)]


def _projection_months(
    as_of: date, months: int, level: float, trend: float, std_dev: float
) -> list[MonthlyProjection]:
    results = []
    year, month = as_of.year, as_of.month
    for i in range(1, months + 1):
        month += 1
        if month > 12:
            year, month = year + 1, 1
        forecast = max(0.0, level + trend * i)
        margin = std_dev * math.sqrt(i) * 1.96
        results.append(
            MonthlyProjection(
                month=f"{year:04d}-{month:02d}",
                forecast=round(forecast, 2),
                confidence_low=max(0.0, round(forecast - margin, 2)),
                confidence_high=round(forecast + margin, 2),
            )
        )
    return results
