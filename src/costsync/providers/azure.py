"""
Azure Cost Management adapter.

Granularity: daily. Uses an Azure AD client-credential token from
azure-identity and the Cost Management Query REST API, grouped by
ServiceName.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential

from ..errors import AuthenticationError, MalformedResponseError
from ..models import (
    Granularity,
    ProviderRawData,
    ProviderRawDetail,
    RawCostRow,
    RawServiceCost,
    RawServiceDailyCost,
)
from ..utils.http_client import HTTPClient
from .base import Credentials, ProviderAdapter, ProviderFactory, ProviderId

logger = logging.getLogger(__name__)

MANAGEMENT_URL = "https://management.azure.com"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"
COST_COLUMNS = ("Cost", "PreTaxCost", "CostUSD")


@ProviderFactory.register_provider
class AzureCostAdapter(ProviderAdapter):
    """Azure Cost Management Query adapter."""

    provider_id = ProviderId.AZURE
    display_name = "Azure"
    aliases = ("microsoft",)
    granularity = Granularity.DAILY
    required_credentials = ("tenant_id", "client_id", "client_secret", "subscription_id")

    def __init__(self, config=None, executor=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, executor)
        self.api_version = self.config.get("api_version", "2023-03-01")
        self.transport = transport

    async def _get_token(self, credentials: Credentials) -> str:
        credential = ClientSecretCredential(
            tenant_id=credentials["tenant_id"],
            client_id=credentials["client_id"],
            client_secret=credentials["client_secret"],
        )
        try:
            token = await asyncio.to_thread(credential.get_token, MANAGEMENT_SCOPE)
        except ClientAuthenticationError as e:
            raise AuthenticationError(f"Azure authentication failed: {e.message}", provider=self.provider_name)
        finally:
            credential.close()
        return token.token

    def _client(self, token: str) -> HTTPClient:
        return HTTPClient(
            MANAGEMENT_URL,
            self.provider_name,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            transport=self.transport,
        )

    def _query_payload(self, start_date: date, end_date: date, grouping: list[dict[str, str]], filter_by=None):
        payload: dict[str, Any] = {
            "type": "ActualCost",
            "timeframe": "Custom",
            "timePeriod": {
                "from": f"{start_date.isoformat()}T00:00:00Z",
                "to": f"{end_date.isoformat()}T23:59:59Z",
            },
            "dataset": {
                "granularity": "Daily",
                "aggregation": {"totalCost": {"name": "Cost", "function": "Sum"}},
                "grouping": grouping,
            },
        }
        if filter_by:
            payload["dataset"]["filter"] = filter_by
        return payload

    async def _query(self, credentials: Credentials, payload: dict[str, Any]) -> tuple[list[str], list[list[Any]]]:
        token = await self.call(lambda: self._get_token(credentials))
        client = self._client(token)
        path = (
            f"/subscriptions/{credentials['subscription_id']}"
            f"/providers/Microsoft.CostManagement/query?api-version={self.api_version}"
        )

        columns: list[str] = []
        rows: list[list[Any]] = []
        while path:
            result = await self.call(lambda: client.post(path, json=payload))
            properties = result.get("properties") if isinstance(result, dict) else None
            if properties is None:
                raise MalformedResponseError("Azure query response has no properties", provider=self.provider_name)
            columns = [column.get("name") for column in properties.get("columns", [])]
            rows.extend(properties.get("rows", []))
            next_link = properties.get("nextLink")
            path = next_link.replace(MANAGEMENT_URL, "") if next_link else None
        return columns, rows

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        columns, rows = await self._query(
            credentials,
            self._query_payload(start_date, end_date, [{"type": "Dimension", "name": "ServiceName"}]),
        )
        cost_index = _column_index(columns, COST_COLUMNS)
        date_index = _column_index(columns, ("UsageDate",))
        service_index = _column_index(columns, ("ServiceName",))
        currency_index = _column_index(columns, ("Currency",))
        if cost_index is None or date_index is None:
            if not rows:
                return self.empty_result(start_date, end_date)
            raise MalformedResponseError(f"Azure query returned unexpected columns {columns}", provider=self.provider_name)

        daily_totals: dict[str, float] = defaultdict(float)
        service_totals: dict[str, float] = defaultdict(float)
        service_daily: list[RawServiceDailyCost] = []
        currency = "USD"

        for row in rows:
            day = str(_usage_date(row[date_index]))
            cost = row[cost_index]
            service = row[service_index] if service_index is not None else "Other"
            if currency_index is not None and row[currency_index]:
                currency = row[currency_index]

            service_daily.append(RawServiceDailyCost(date=day, service=service or "Other", cost=cost))
            try:
                value = float(cost)
            except (TypeError, ValueError):
                continue
            daily_totals[day] += value
            service_totals[service or "Other"] += value

        return self.empty_result(
            start_date,
            end_date,
            currency=currency,
            daily=[RawCostRow(date=day, cost=cost) for day, cost in sorted(daily_totals.items())],
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
            service_daily=service_daily,
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        payload = self._query_payload(
            start_date,
            end_date,
            [{"type": "Dimension", "name": "MeterSubCategory"}],
            filter_by={"dimensions": {"name": "ServiceName", "operator": "In", "values": [service_name]}},
        )
        columns, rows = await self._query(credentials, payload)
        cost_index = _column_index(columns, COST_COLUMNS)
        meter_index = _column_index(columns, ("MeterSubCategory",))

        items: dict[str, float] = defaultdict(float)
        for row in rows:
            if cost_index is None:
                break
            meter = (row[meter_index] if meter_index is not None else None) or service_name
            items[meter] += float(row[cost_index] or 0)

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in items.items()],
        )


def _column_index(columns: list[str], names: tuple[str, ...]) -> int | None:
    for name in names:
        if name in columns:
            return columns.index(name)
    return None


def _usage_date(value: Any) -> Any:
    """UsageDate arrives as an integer like 20240501."""
    text = str(value)
    if text.isdigit() and len(text) == 8:
        return f"{text[:4]}-{text[4:6]}-{text[6:]}"
    return value
