"""
Google Cloud Platform billing adapter.

Granularity: daily. GCP exposes usage cost through the Cloud Billing
BigQuery export, so this adapter queries the export table configured for the
account (``billing_table`` in the credentials or provider config).
"""

import asyncio
import json
import logging
import re
from collections import defaultdict
from datetime import date
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery
from google.oauth2 import service_account

from ..errors import (
    AuthenticationError,
    CloudProviderError,
    ConfigurationError,
    InvalidRequestError,
    ProviderTimeoutError,
    RateLimitError,
    UpstreamUnavailableError,
)
from ..models import (
    Granularity,
    ProviderRawData,
    ProviderRawDetail,
    RawCostRow,
    RawServiceCost,
    RawServiceDailyCost,
)
from .base import Credentials, ProviderAdapter, ProviderFactory, ProviderId

logger = logging.getLogger(__name__)

TABLE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+\.[A-Za-z0-9_]+\.[A-Za-z0-9_]+$")

DAILY_QUERY = """
SELECT
  DATE(usage_start_time) AS usage_date,
  service.description AS service,
  SUM(cost) AS cost,
  SUM(IFNULL((SELECT SUM(c.amount) FROM UNNEST(credits) c), 0)) AS credits,
  ANY_VALUE(currency) AS currency
FROM `{table}`
WHERE DATE(usage_start_time) BETWEEN @start_date AND @end_date
GROUP BY usage_date, service
ORDER BY usage_date
"""

DETAIL_QUERY = """
SELECT
  sku.description AS sku,
  SUM(cost) AS cost
FROM `{table}`
WHERE DATE(usage_start_time) BETWEEN @start_date AND @end_date
  AND service.description = @service_name
GROUP BY sku
ORDER BY cost DESC
"""


@ProviderFactory.register_provider
class GCPCostAdapter(ProviderAdapter):
    """GCP billing export adapter."""

    provider_id = ProviderId.GCP
    display_name = "Google Cloud"
    aliases = ("google", "gcloud")
    granularity = Granularity.DAILY
    required_credentials = ("service_account_key",)

    def _billing_table(self, credentials: Credentials) -> str:
        table = credentials.get("billing_table") or self.config.get("billing_table")
        if not table:
            raise ConfigurationError(
                "GCP billing export table not configured (billing_table)", provider=self.provider_name
            )
        if not TABLE_PATTERN.match(table):
            raise InvalidRequestError(f"Invalid BigQuery table name: {table}", provider=self.provider_name)
        return table

    def _create_client(self, credentials: Credentials) -> bigquery.Client:
        key = credentials["service_account_key"]
        try:
            info = json.loads(key) if isinstance(key, str) else dict(key)
            gcp_credentials = service_account.Credentials.from_service_account_info(info)
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(f"Invalid GCP service account key: {e}", provider=self.provider_name)
        project = credentials.get("project_id") or info.get("project_id")
        return bigquery.Client(project=project, credentials=gcp_credentials)

    async def _run_query(self, client, sql: str, parameters: list) -> list[dict[str, Any]]:
        job_config = bigquery.QueryJobConfig(query_parameters=parameters)

        def run():
            return [dict(row.items()) for row in client.query(sql, job_config=job_config).result()]

        try:
            return await asyncio.to_thread(run)
        except google_exceptions.GoogleAPICallError as e:
            raise self._translate_error(e)
        except GoogleAuthError as e:
            raise AuthenticationError(f"GCP authentication failed: {e}", provider=self.provider_name)

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        table = self._billing_table(credentials)
        client = self._create_client(credentials)

        rows = await self.call(
            lambda: self._run_query(
                client,
                DAILY_QUERY.format(table=table),
                [
                    bigquery.ScalarQueryParameter("start_date", "DATE", start_date),
                    bigquery.ScalarQueryParameter("end_date", "DATE", end_date),
                ],
            )
        )

        daily_totals: dict[str, float] = defaultdict(float)
        service_totals: dict[str, float] = defaultdict(float)
        service_daily: list[RawServiceDailyCost] = []
        credits = 0.0
        currency = "USD"

        for row in rows:
            day = row.get("usage_date")
            day = day.isoformat() if isinstance(day, date) else str(day)
            service = row.get("service") or "Other"
            cost = row.get("cost")
            currency = row.get("currency") or currency
            credits += abs(float(row.get("credits") or 0))

            service_daily.append(RawServiceDailyCost(date=day, service=service, cost=cost))
            try:
                value = float(cost)
            except (TypeError, ValueError):
                continue
            daily_totals[day] += value
            service_totals[service] += value

        return self.empty_result(
            start_date,
            end_date,
            currency=currency,
            daily=[RawCostRow(date=day, cost=cost) for day, cost in sorted(daily_totals.items())],
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
            service_daily=service_daily,
            credits=credits,
            metadata={"billing_table": table},
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        table = self._billing_table(credentials)
        client = self._create_client(credentials)

        rows = await self.call(
            lambda: self._run_query(
                client,
                DETAIL_QUERY.format(table=table),
                [
                    bigquery.ScalarQueryParameter("start_date", "DATE", start_date),
                    bigquery.ScalarQueryParameter("end_date", "DATE", end_date),
                    bigquery.ScalarQueryParameter("service_name", "STRING", service_name),
                ],
            )
        )
        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=row.get("sku"), cost=row.get("cost")) for row in rows],
        )

    def _translate_error(self, error: google_exceptions.GoogleAPICallError) -> CloudProviderError:
        message = f"GCP BigQuery error: {error.message}"
        if isinstance(error, (google_exceptions.Unauthorized, google_exceptions.Forbidden)):
            return AuthenticationError(message, provider=self.provider_name)
        if isinstance(error, (google_exceptions.TooManyRequests, google_exceptions.ResourceExhausted)):
            return RateLimitError(message, provider=self.provider_name)
        if isinstance(error, google_exceptions.DeadlineExceeded):
            return ProviderTimeoutError(message, provider=self.provider_name)
        if isinstance(error, google_exceptions.ServerError):
            return UpstreamUnavailableError(message, provider=self.provider_name, status_code=error.code)
        return InvalidRequestError(message, provider=self.provider_name, status_code=error.code)
