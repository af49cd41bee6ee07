"""
IBM Cloud billing adapter.

Granularity: invoice (monthly). The Usage Reports API only aggregates per
billing month, so every month touched by the range becomes one point dated
on the earlier of the month's last day and the end of the range.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx

from ..errors import MalformedResponseError
from ..models import Granularity, ProviderRawData, ProviderRawDetail, RawCostRow, RawServiceCost
from ..utils.http_client import HTTPClient
from .base import (
    Credentials,
    ProviderAdapter,
    ProviderFactory,
    ProviderId,
    as_float,
    iter_months,
    month_end,
)

logger = logging.getLogger(__name__)

IAM_URL = "https://iam.cloud.ibm.com"
BILLING_URL = "https://billing.cloud.ibm.com"
APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"


@ProviderFactory.register_provider
class IBMCloudCostAdapter(ProviderAdapter):
    """IBM Cloud account usage adapter."""

    provider_id = ProviderId.IBM
    display_name = "IBM Cloud"
    aliases = ("ibmcloud",)
    granularity = Granularity.INVOICE
    required_credentials = ("api_key", "account_id")

    def __init__(self, config=None, executor=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, executor)
        self.transport = transport

    async def _get_token(self, credentials: Credentials) -> str:
        client = HTTPClient(
            IAM_URL,
            self.provider_name,
            headers={"Accept": "application/json"},
            transport=self.transport,
        )
        data = await self.call(
            lambda: client.post(
                "/identity/token",
                data={"grant_type": APIKEY_GRANT, "apikey": credentials["api_key"]},
            )
        )
        token = data.get("access_token")
        if not token:
            raise MalformedResponseError("IBM IAM response has no access_token", provider=self.provider_name)
        return token

    async def _monthly_usage(
        self, credentials: Credentials, start_date: date, end_date: date
    ) -> list[tuple[date, dict[str, Any]]]:
        token = await self._get_token(credentials)
        client = HTTPClient(
            BILLING_URL,
            self.provider_name,
            headers={"Authorization": f"Bearer {token}"},
            transport=self.transport,
        )
        usage = []
        for year, month in iter_months(start_date, end_date):
            path = f"/v4/accounts/{credentials['account_id']}/usage/{year:04d}-{month:02d}"
            data = await self.call(lambda: client.get(path))
            usage.append((date(year, month, 1), data))
        return usage

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        daily: list[RawCostRow] = []
        service_totals: dict[str, float] = defaultdict(float)
        currency = "USD"

        for first_day, data in await self._monthly_usage(credentials, start_date, end_date):
            resources = data.get("resources") or []
            currency = data.get("currency_code") or currency
            month_total = 0.0
            for resource in resources:
                cost = as_float(resource.get("billable_cost"))
                month_total += cost
                service_totals[resource.get("resource_name") or resource.get("resource_id") or "Other"] += cost
            if resources:
                daily.append(RawCostRow(date=min(month_end(first_day), end_date).isoformat(), cost=month_total))

        return self.empty_result(
            start_date,
            end_date,
            currency=currency,
            daily=daily,
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        totals: dict[str, float] = defaultdict(float)
        for _, data in await self._monthly_usage(credentials, start_date, end_date):
            for resource in data.get("resources") or []:
                if (resource.get("resource_name") or resource.get("resource_id")) != service_name:
                    continue
                for plan in resource.get("plans") or []:
                    totals[plan.get("plan_name") or plan.get("plan_id") or service_name] += as_float(
                        plan.get("billable_cost")
                    )

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in totals.items()],
        )
