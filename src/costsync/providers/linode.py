"""
Linode (Akamai Cloud) billing adapter.

Granularity: invoice. Linode issues one invoice on the first of each month
for the month before, so every invoice becomes one point dated on the last
day of the billed month, using the pre-tax subtotal. The uninvoiced balance
of the running month becomes one point dated on the last day of the
requested range.
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

API_URL = "https://api.linode.com"
PAGE_SIZE = 100


@ProviderFactory.register_provider
class LinodeCostAdapter(ProviderAdapter):
    """Linode account invoices adapter."""

    provider_id = ProviderId.LINODE
    display_name = "Linode"
    aliases = ("akamai",)
    granularity = Granularity.INVOICE
    required_credentials = ("api_token",)

    def __init__(self, config=None, executor=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, executor)
        self.transport = transport

    def _client(self, credentials: Credentials) -> HTTPClient:
        return HTTPClient(
            API_URL,
            self.provider_name,
            headers={"Authorization": f"Bearer {credentials['api_token']}"},
            transport=self.transport,
        )

    async def _get_paginated(self, client: HTTPClient, path: str) -> list[dict[str, Any]]:
        """Collect ``data`` from every page of a Linode collection."""
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self.call(lambda: client.get(path, params={"page": page, "page_size": PAGE_SIZE}))
            results.extend(data.get("data") or [])
            if page >= int(data.get("pages") or 1):
                return results
            page += 1

    async def _invoices_in_range(self, client: HTTPClient, start_date: date, end_date: date):
        invoices = await self._get_paginated(client, "/v4/account/invoices")
        selected = []
        for invoice in invoices:
            day = billed_day(invoice.get("date"))
            if day is None or start_date <= day <= end_date:
                selected.append((invoice, day))
        return selected

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        daily: list[RawCostRow] = []
        service_totals: dict[str, float] = defaultdict(float)
        tax_total = 0.0

        for invoice, day in await self._invoices_in_range(client, start_date, end_date):
            daily.append(
                RawCostRow(
                    date=day.isoformat() if day else invoice.get("date"),
                    cost=invoice.get("subtotal"),
                )
            )
            tax_total += as_float(invoice.get("tax"))
            items = await self._get_paginated(client, f"/v4/account/invoices/{invoice.get('id')}/items")
            for item in items:
                service_totals[_service_name(item)] += as_float(item.get("amount"))

        account = await self.call(lambda: client.get("/v4/account"))
        uninvoiced = account.get("balance_uninvoiced")
        if uninvoiced is not None and includes_running_month(end_date, self.today):
            daily.append(RawCostRow(date=end_date.isoformat(), cost=uninvoiced))

        return self.empty_result(
            start_date,
            end_date,
            daily=daily,
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
            metadata={"tax": tax_total, "balance": account.get("balance")},
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        totals: dict[str, float] = defaultdict(float)
        for invoice, _ in await self._invoices_in_range(client, start_date, end_date):
            items = await self._get_paginated(client, f"/v4/account/invoices/{invoice.get('id')}/items")
            for item in items:
                if _service_name(item) == service_name:
                    totals[item.get("label") or service_name] += as_float(item.get("amount"))

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in totals.items()],
        )


def _service_name(item: dict[str, Any]) -> str:
    """Item labels look like "Linode 4GB - web-1"; the part before the dash names the service."""
    label = item.get("label") or item.get("type") or "Other"
    return label.split(" - ")[0].strip() or "Other"
