"""
DigitalOcean billing adapter.

Granularity: invoice. DigitalOcean only exposes monthly invoices plus a
month-to-date invoice preview. Each issued invoice becomes one point dated
on the last day of its billing period; the preview becomes one point dated
on the last day of the requested range.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx

from ..models import Granularity, ProviderRawData, ProviderRawDetail, RawCostRow, RawServiceCost
from ..utils.http_client import HTTPClient
from .base import Credentials, ProviderAdapter, ProviderFactory, ProviderId, as_float, in_range, month_end

logger = logging.getLogger(__name__)

API_URL = "https://api.digitalocean.com"
PAGE_SIZE = 200


@ProviderFactory.register_provider
class DigitalOceanCostAdapter(ProviderAdapter):
    """DigitalOcean invoices adapter."""

    provider_id = ProviderId.DIGITALOCEAN
    display_name = "DigitalOcean"
    aliases = ("do",)
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

    async def _list_invoices(self, client: HTTPClient) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
        invoices: list[dict[str, Any]] = []
        preview = None
        page = 1
        while True:
            data = await self.call(
                lambda: client.get("/v2/customers/my/invoices", params={"page": page, "per_page": PAGE_SIZE})
            )
            invoices.extend(data.get("invoices") or [])
            preview = preview or data.get("invoice_preview")
            if not (data.get("links") or {}).get("pages", {}).get("next"):
                return invoices, preview
            page += 1

    async def _invoice_items(self, client: HTTPClient, invoice_uuid: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self.call(
                lambda: client.get(
                    f"/v2/customers/my/invoices/{invoice_uuid}", params={"page": page, "per_page": PAGE_SIZE}
                )
            )
            items.extend(data.get("invoice_items") or [])
            if not (data.get("links") or {}).get("pages", {}).get("next"):
                return items
            page += 1

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        invoices, preview = await self._list_invoices(client)

        daily: list[RawCostRow] = []
        for invoice in invoices:
            invoice_date = _invoice_date(invoice)
            if in_range(invoice_date, start_date, end_date):
                daily.append(RawCostRow(date=invoice_date, cost=invoice.get("amount")))

        services: list[RawServiceCost] = []
        if preview and _period_overlaps(preview.get("invoice_period"), start_date, end_date):
            daily.append(RawCostRow(date=end_date.isoformat(), cost=preview.get("amount")))
            if preview.get("invoice_uuid"):
                items = await self._invoice_items(client, preview["invoice_uuid"])
                totals: dict[str, float] = defaultdict(float)
                for item in items:
                    try:
                        totals[item.get("product") or "Other"] += float(item.get("amount"))
                    except (TypeError, ValueError):
                        services.append(RawServiceCost(name=item.get("product"), cost=item.get("amount")))
                services.extend(RawServiceCost(name=name, cost=cost) for name, cost in totals.items())
        else:
            logger.debug(f"DigitalOcean invoice preview outside {start_date}..{end_date}")

        return self.empty_result(
            start_date,
            end_date,
            daily=daily,
            services=services,
            metadata={"invoice_count": len(invoices), "preview_period": (preview or {}).get("invoice_period")},
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._client(credentials)

        _, preview = await self._list_invoices(client)
        totals: dict[str, float] = defaultdict(float)
        if preview and preview.get("invoice_uuid"):
            for item in await self._invoice_items(client, preview["invoice_uuid"]):
                if item.get("product") != service_name:
                    continue
                label = item.get("description") or item.get("group_description") or service_name
                totals[label] += as_float(item.get("amount"))

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in totals.items()],
        )


def _invoice_date(invoice: dict[str, Any]) -> Any:
    """An issued invoice is dated on the last day of its billing period."""
    period = _parse_period(invoice.get("invoice_period"))
    if period is None:
        return invoice.get("invoice_date") or invoice.get("invoice_period")
    return month_end(period).isoformat()


def _parse_period(value: Any) -> date | None:
    if not isinstance(value, str):
        return None
    try:
        year, month = value.split("-")[:2]
        return date(int(year), int(month), 1)
    except ValueError:
        return None


def _period_overlaps(value: Any, start_date: date, end_date: date) -> bool:
    first = _parse_period(value)
    if first is None:
        return False
    return first <= end_date and month_end(first) >= start_date
