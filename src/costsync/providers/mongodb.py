"""
MongoDB Atlas billing adapter.

Granularity: daily. Atlas invoices carry line items per SKU and usage day
(amounts in cents), so the pending invoice and any past invoice overlapping
the range are expanded into per-day points.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any

import httpx

from ..models import (
    Granularity,
    ProviderRawData,
    ProviderRawDetail,
    RawCostRow,
    RawServiceCost,
    RawServiceDailyCost,
)
from ..utils.http_client import HTTPClient
from .base import Credentials, ProviderAdapter, ProviderFactory, ProviderId, parse_day

logger = logging.getLogger(__name__)

API_URL = "https://cloud.mongodb.com/api/atlas/v1.0"

SKU_CATEGORIES = (
    ("SERVERLESS", "Serverless"),
    ("BACKUP", "Backup"),
    ("SNAPSHOT", "Backup"),
    ("DATA_TRANSFER", "Data Transfer"),
    ("DATA_LAKE", "Data Federation"),
    ("DATA_FEDERATION", "Data Federation"),
    ("SEARCH", "Search"),
    ("SUPPORT", "Support"),
    ("STORAGE", "Storage"),
    ("INSTANCE", "Clusters"),
)


@ProviderFactory.register_provider
class MongoDBAtlasCostAdapter(ProviderAdapter):
    """MongoDB Atlas organization invoices adapter."""

    provider_id = ProviderId.MONGODB
    display_name = "MongoDB Atlas"
    aliases = ("atlas", "mongodbatlas")
    granularity = Granularity.DAILY
    required_credentials = ("public_key", "private_key", "org_id")

    def __init__(self, config=None, executor=None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, executor)
        self.transport = transport

    def _client(self, credentials: Credentials) -> HTTPClient:
        return HTTPClient(
            API_URL,
            self.provider_name,
            headers={"Accept": "application/json"},
            auth=httpx.DigestAuth(credentials["public_key"], credentials["private_key"]),
            transport=self.transport,
        )

    async def _line_items(
        self, credentials: Credentials, start_date: date, end_date: date
    ) -> list[dict[str, Any]]:
        """Line items of the pending invoice and of past invoices overlapping the range."""
        client = self._client(credentials)
        org = credentials["org_id"]

        pending = await self.call(lambda: client.get(f"/orgs/{org}/invoices/pending"))
        items = list(pending.get("lineItems") or [])

        listing = await self.call(lambda: client.get(f"/orgs/{org}/invoices"))
        for invoice in listing.get("results") or []:
            if invoice.get("id") == pending.get("id") or not _overlaps(invoice, start_date, end_date):
                continue
            path = f"/orgs/{org}/invoices/{invoice['id']}"
            detail = await self.call(lambda: client.get(path))
            items.extend(detail.get("lineItems") or [])

        selected = []
        for item in items:
            day = parse_day(item.get("startDate"))
            if day is None or start_date <= day <= end_date:
                selected.append(item)
        return selected

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        daily_totals: dict[str, float] = defaultdict(float)
        service_totals: dict[str, float] = defaultdict(float)
        service_daily: list[RawServiceDailyCost] = []

        for item in await self._line_items(credentials, start_date, end_date):
            day = parse_day(item.get("startDate"))
            day_key = day.isoformat() if day else str(item.get("startDate"))
            service = sku_category(item.get("sku"))
            cost = _cents(item.get("totalPriceCents"))

            service_daily.append(RawServiceDailyCost(date=day_key, service=service, cost=cost))
            if isinstance(cost, float):
                daily_totals[day_key] += cost
                service_totals[service] += cost

        return self.empty_result(
            start_date,
            end_date,
            daily=[RawCostRow(date=day, cost=cost) for day, cost in sorted(daily_totals.items())],
            services=[RawServiceCost(name=name, cost=cost) for name, cost in service_totals.items()],
            service_daily=service_daily,
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)

        totals: dict[str, float] = defaultdict(float)
        for item in await self._line_items(credentials, start_date, end_date):
            if sku_category(item.get("sku")) != service_name:
                continue
            cost = _cents(item.get("totalPriceCents"))
            label = item.get("clusterName") or item.get("groupName") or item.get("sku") or service_name
            totals[label] += cost if isinstance(cost, float) else 0.0

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in totals.items()],
        )


def sku_category(sku: Any) -> str:
    """Map an Atlas SKU such as ATLAS_AWS_INSTANCE_M10 to a service category."""
    sku = str(sku or "").upper()
    for marker, category in SKU_CATEGORIES:
        if marker in sku:
            return category
    return "Other"


def _cents(value: Any) -> Any:
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return value


def _overlaps(invoice: dict[str, Any], start_date: date, end_date: date) -> bool:
    invoice_start = parse_day(invoice.get("startDate"))
    invoice_end = parse_day(invoice.get("endDate"))
    if invoice_start is None or invoice_end is None:
        return False
    return invoice_start <= end_date and invoice_end >= start_date
