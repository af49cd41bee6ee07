"""
Vultr billing adapter.

Granularity: invoice. Vultr invoices on the first of the month for the month
before, so each invoice becomes one point dated on the last day of the
billed month. Pending (not yet invoiced) charges become one point dated on
the last day of the requested range and supply the per-product services.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx

from ..models import Granularity, ProviderRawData, ProviderRawDetail, RawCostRow, RawServiceCost
from ..utils.http_client import HTTPClient
from .base import (
    Credentials,
    ProviderAdapter,
    ProviderFactory,
    ProviderId,
    as_float,
    billed_day,
    includes_running_month,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.vultr.com"
PAGE_SIZE = 100


@ProviderFactory.register_provider
class VultrCostAdapter(ProviderAdapter):
    """Vultr billing adapter."""

    provider_id = ProviderId.VULTR
    display_name = "Vultr"
    granularity = Granularity.INVOICE
    required_credentials = ("api_key",)

    def __init__(self, config=None, executor=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, executor)
        self.transport = transport

    def _client(self, credentials: Credentials) -> HTTPClient:
        return HTTPClient(
            API_URL,
            self.provider_name,
            headers={"Authorization": f"Bearer {credentials['api_key']}"},
            transport=self.transport,
        )

    async def _list_invoices(self, client: HTTPClient) -> list[dict[str, Any]]:
        invoices: list[dict[str, Any]] = []
        params: dict[str, Any] = {"per_page": PAGE_SIZE}
        while True:
            data = await self.call(lambda: client.get("/v2/billing/invoices", params=dict(params)))
            invoices.extend(data.get("billing_invoices") or [])
            cursor = ((data.get("meta") or {}).get("links") or {}).get("next")
            if not cursor:
                return invoices
            params["cursor"] = cursor

    async def _pending_charges(self, client: HTTPClient) -> list[dict[str, Any]]:
        data = await self.call(lambda: client.get("/v2/billing/pending-charges"))
        return data.get("pending_charges") or []

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        daily: list[RawCostRow] = []
        for invoice in await self._list_invoices(client):
            day = billed_day(invoice.get("date"))
            if day is None:
                daily.append(RawCostRow(date=invoice.get("date"), cost=invoice.get("amount")))
            elif start_date <= day <= end_date:
                daily.append(RawCostRow(date=day.isoformat(), cost=invoice.get("amount")))

        charges = await self._pending_charges(client) if includes_running_month(end_date, self.today) else []
        service_totals: dict[str, float] = defaultdict(float)
        pending_total = 0.0
        for charge in charges:
            amount = as_float(charge.get("total"))
            pending_total += amount
            service_totals[charge.get("product") or charge.get("description") or "Other"] += amount
        if charges:
            daily.append(RawCostRow(date=end_date.isoformat(), cost=pending_total))

        return self.empty_result(
            start_date,
            end_date,
            daily=daily,
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
            metadata={"pending_charges": len(charges)},
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        totals: dict[str, float] = defaultdict(float)
        for charge in await self._pending_charges(client):
            product = charge.get("product") or charge.get("description") or "Other"
            if product == service_name:
                totals[charge.get("description") or product] += as_float(charge.get("total"))

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in totals.items()],
        )
