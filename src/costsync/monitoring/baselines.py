"""
Rolling per-service cost baselines for anomaly detection.

For every service of a snapshot, the engine compares each of the most recent
days with the mean of the trailing window before it and emits one
AnomalyBaseline row per (service, day). Whether a row is worth notifying
about is decided by the caller via ``flag_anomalies``.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, timedelta
from typing import Any

from ..models import AnomalyBaseline, AnomalySeverity, CostSnapshot, ServiceDailyCost

logger = logging.getLogger(__name__)


def severity_for(variance_percent: float, actual_cost: float) -> AnomalySeverity:
    """Severity from the size of the deviation and the cost involved."""
    abs_variance = abs(variance_percent)
    if abs_variance > 100 or actual_cost > 1000:
        return AnomalySeverity.CRITICAL
    if abs_variance > 50 or actual_cost > 500:
        return AnomalySeverity.HIGH
    if abs_variance > 25:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def variance_percent(actual: float, baseline: float) -> float:
    if baseline == 0:
        return 0.0 if actual == 0 else 100.0
    return (actual - baseline) / baseline * 100


def flag_anomalies(rows: Iterable[AnomalyBaseline], threshold_percent: float) -> list[AnomalyBaseline]:
    """Rows whose absolute variance exceeds the threshold, largest first."""
    flagged = [row for row in rows if abs(row.variance_percent) > threshold_percent]
    return sorted(flagged, key=lambda row: abs(row.variance_percent), reverse=True)


class AnomalyBaselineEngine:
    """Computes rolling baselines from per-service daily costs."""

    def __init__(self, window_days: int = 30, recent_days: int = 7):
        """
        Args:
            window_days: Length of the trailing window the baseline mean is taken over
            recent_days: Number of most recent days a row is emitted for
        """
        if window_days < 1 or recent_days < 1:
            raise ValueError("window_days and recent_days must be positive")
        self.window_days = window_days
        self.recent_days = recent_days

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "AnomalyBaselineEngine":
        config = config or {}
        return cls(
            window_days=int(config.get("window_days", 30)),
            recent_days=int(config.get("recent_days", 7)),
        )

    def update_baselines(
        self,
        tenant: str,
        provider: str,
        account_id: str,
        snapshot: CostSnapshot,
        history: Iterable[ServiceDailyCost] | None = None,
        *,
        as_of: date | None = None,
    ) -> list[AnomalyBaseline]:
        """
        Compute baseline rows for the trailing days of every service in the snapshot.

        Args:
            tenant: Tenant identifier
            provider: Provider id
            account_id: Account identifier
            snapshot: Normalized snapshot; its ``service_daily`` feeds the series
            history: Earlier per-service daily costs, overridden by snapshot values
            as_of: Last day rows are emitted for; defaults to the snapshot's end date

        Returns:
            One AnomalyBaseline per (service, day), regardless of thresholds
        """
        end = as_of or snapshot.end_date
        series: dict[str, dict[date, float]] = defaultdict(dict)
        for row in history or []:
            series[row.service][row.date] = row.cost
        snapshot_days: dict[str, dict[date, float]] = defaultdict(dict)
        for row in snapshot.service_daily:
            snapshot_days[row.service][row.date] = snapshot_days[row.service].get(row.date, 0.0) + row.cost
        for service, days in snapshot_days.items():
            series[service].update(days)

        rows: list[AnomalyBaseline] = []
        for service in snapshot.services:
            costs = series.get(service.name)
            if not costs:
                logger.debug(f"No daily series for {provider}/{account_id} service {service.name}, skipping")
                continue
            for day, baseline, actual in self._rolling(costs, end):
                variance = variance_percent(actual, baseline)
                rows.append(
                    AnomalyBaseline(
                        tenant=tenant,
                        provider=provider,
                        account_id=account_id,
                        service=service.name,
                        date=day,
                        baseline_cost=baseline,
                        actual_cost=actual,
                        variance_percent=variance,
                        severity=severity_for(variance, actual),
                    )
                )

        logger.info(
            f"Computed {len(rows)} baseline rows for {tenant}/{provider}/{account_id} "
            f"({len(snapshot.services)} services)"
        )
        return rows

    def _rolling(self, costs: dict[date, float], end: date):
        """
        Yield (day, baseline, actual) for the recent days ending at ``end``.

        The baseline of a day is the mean over the days with data in the
        ``window_days`` before it. Sum and count slide one day at a time.
        """
        first_day = end - timedelta(days=self.recent_days - 1)
        window_start = first_day - timedelta(days=self.window_days)

        window_sum = 0.0
        window_count = 0
        day = window_start
        while day < first_day:
            if day in costs:
                window_sum += costs[day]
                window_count += 1
            day += timedelta(days=1)

        day = first_day
        while day <= end:
            baseline = window_sum / window_count if window_count else 0.0
            yield day, baseline, costs.get(day, 0.0)

            leaving = day - timedelta(days=self.window_days)
            if leaving in costs:
                window_sum -= costs[leaving]
                window_count -= 1
            if day in costs:
                window_sum += costs[day]
                window_count += 1
            day += timedelta(days=1)
