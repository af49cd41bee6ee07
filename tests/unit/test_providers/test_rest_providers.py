"""
Tests for the REST invoice adapters: DigitalOcean, Linode, Vultr, IBM Cloud and MongoDB Atlas.
"""

from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from costsync.errors import AuthenticationError, MalformedResponseError
from costsync.models import Granularity
from costsync.providers.digitalocean import DigitalOceanCostAdapter
from costsync.providers.ibm import IBMCloudCostAdapter
from costsync.providers.linode import LinodeCostAdapter
from costsync.providers.mongodb import MongoDBAtlasCostAdapter, sku_category
from costsync.providers.vultr import VultrCostAdapter
from costsync.utils.data_normalizer import normalize


def mock_transport(table, calls=None):
    """Route requests by (method, path). Values are a JSON body, a (status, body) pair or a callable."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        route = table.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})
        if callable(route):
            route = route(request)
        if isinstance(route, tuple):
            status, body = route
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=route)

    return httpx.MockTransport(handler)


def points(raw):
    return {row.date: row.cost for row in raw.daily}


class TestDigitalOcean:
    CREDENTIALS = {"api_token": "do-token"}

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def adapter(self, executor, calls):
        def invoices(request):
            if request.url.params["page"] == "1":
                return {
                    "invoices": [
                        {"invoice_uuid": "feb", "amount": "120.50", "invoice_period": "2024-02"},
                        {"invoice_uuid": "dec", "amount": "99.00", "invoice_period": "2023-12"},
                    ],
                    "invoice_preview": {"invoice_uuid": "preview", "amount": "45.25", "invoice_period": "2024-03"},
                    "links": {"pages": {"next": "https://api.digitalocean.com/v2/customers/my/invoices?page=2"}},
                }
            return {"invoices": [{"invoice_uuid": "jan", "amount": "110", "invoice_period": "2024-01"}], "links": {}}

        table = {
            ("GET", "/v2/customers/my/invoices"): invoices,
            ("GET", "/v2/customers/my/invoices/preview"): {
                "invoice_items": [
                    {"product": "Droplets", "amount": "30.00", "description": "web-1"},
                    {"product": "Droplets", "amount": "10.00", "description": "web-2"},
                    {"product": "Tax - VAT", "amount": "5.25"},
                ],
                "links": {},
            },
        }
        return DigitalOceanCostAdapter({}, executor, transport=mock_transport(table, calls))

    async def test_invoices_dated_on_period_end(self, adapter, calls):
        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 15), date(2024, 3, 15))

        assert raw.granularity == Granularity.INVOICE
        assert points(raw) == {"2024-02-29": "120.50", "2024-01-31": "110", "2024-03-15": "45.25"}
        assert raw.metadata["invoice_count"] == 3
        assert calls[0].headers["Authorization"] == "Bearer do-token"
        assert [request.url.params.get("page") for request in calls[:2]] == ["1", "2"]

    async def test_tax_line_dropped_by_normalizer(self, adapter):
        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 15), date(2024, 3, 15))
        assert {row.name for row in raw.services} == {"Droplets", "Tax - VAT"}

        snapshot, _ = normalize(raw, "digitalocean", as_of=date(2024, 3, 15))

        assert [(service.name, service.cost) for service in snapshot.services] == [("Droplets", 40.0)]
        assert snapshot.current_month == 45.25

    async def test_preview_outside_range_skipped(self, adapter, calls):
        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 2, 29))

        assert points(raw) == {"2024-02-29": "120.50", "2024-01-31": "110"}
        assert raw.services == []
        assert not any(request.url.path.endswith("/preview") for request in calls)

    async def test_service_detail(self, adapter):
        detail = await adapter.fetch_service_detail(self.CREDENTIALS, "Droplets", date(2024, 3, 1), date(2024, 3, 15))

        assert {item.name: item.cost for item in detail.items} == {"web-1": 30.0, "web-2": 10.0}


class TestLinode:
    CREDENTIALS = {"api_token": "linode-token"}

    TABLE = {
        ("GET", "/v4/account/invoices"): {
            "data": [
                {"id": 1, "date": "2024-03-01T00:00:00", "subtotal": 80.0, "tax": 8.0},
                {"id": 2, "date": "2024-02-01T00:00:00", "subtotal": 70.0, "tax": 7.0},
            ],
            "page": 1,
            "pages": 1,
        },
        ("GET", "/v4/account/invoices/1/items"): {
            "data": [
                {"label": "Linode 4GB - web-1", "amount": 40.0},
                {"label": "Linode 4GB - web-2", "amount": 30.0},
                {"label": "NodeBalancer - lb-1", "amount": 10.0},
            ],
            "pages": 1,
        },
        ("GET", "/v4/account/invoices/2/items"): {"data": [{"label": "Linode 2GB - db-1", "amount": 70.0}], "pages": 1},
        ("GET", "/v4/account"): {"balance": 0.0, "balance_uninvoiced": 25.5},
    }

    def adapter(self, executor, table=None, today="2024-03-15"):
        return LinodeCostAdapter({"today": today}, executor, transport=mock_transport(table or self.TABLE))

    async def test_invoice_and_uninvoiced_balance(self, executor):
        raw = await self.adapter(executor).fetch(self.CREDENTIALS, date(2024, 2, 1), date(2024, 3, 15))

        assert points(raw) == {"2024-02-29": 80.0, "2024-03-15": 25.5}
        assert {row.name: row.cost for row in raw.services} == {"Linode 4GB": 70.0, "NodeBalancer": 10.0}
        assert raw.metadata["tax"] == 8.0

    async def test_past_range_has_no_uninvoiced_point(self, executor):
        raw = await self.adapter(executor).fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 1, 31))

        assert points(raw) == {"2024-01-31": 70.0}

    async def test_running_month_follows_configured_day(self, executor):
        # a range ending in March is in the past once April has started
        raw = await self.adapter(executor, today="2024-04-02").fetch(
            self.CREDENTIALS, date(2024, 2, 1), date(2024, 3, 15)
        )

        assert points(raw) == {"2024-02-29": 80.0}

    async def test_unauthorized(self, executor):
        table = {("GET", "/v4/account/invoices"): (401, {"errors": [{"reason": "Invalid Token"}]})}

        with pytest.raises(AuthenticationError, match="Invalid Token"):
            await self.adapter(executor, table).fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 1, 31))

    async def test_service_detail(self, executor):
        detail = await self.adapter(executor).fetch_service_detail(
            self.CREDENTIALS, "Linode 4GB", date(2024, 2, 1), date(2024, 3, 15)
        )

        assert {item.name: item.cost for item in detail.items} == {
            "Linode 4GB - web-1": 40.0,
            "Linode 4GB - web-2": 30.0,
        }


class TestVultr:
    CREDENTIALS = {"api_key": "vultr-key"}

    @staticmethod
    def invoices(request):
        if request.url.params.get("cursor") == "next-page":
            return {
                "billing_invoices": [{"id": 2, "date": "2024-02-01T00:00:00+00:00", "amount": 50.0}],
                "meta": {"links": {"next": ""}},
            }
        return {
            "billing_invoices": [{"id": 1, "date": "2024-03-01T00:00:00+00:00", "amount": 55.0}],
            "meta": {"links": {"next": "next-page"}},
        }

    def table(self, overrides=None):
        table = {
            ("GET", "/v2/billing/invoices"): self.invoices,
            ("GET", "/v2/billing/pending-charges"): {
                "pending_charges": [
                    {"product": "Cloud Compute", "description": "web", "total": 12.5},
                    {"product": "Block Storage", "description": "vol", "total": 2.5},
                ]
            },
        }
        table.update(overrides or {})
        return table

    async def test_cursor_paging_and_pending_charges(self, executor):
        adapter = VultrCostAdapter({"today": date(2024, 3, 15)}, executor, transport=mock_transport(self.table()))

        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 3, 15))

        assert points(raw) == {"2024-02-29": 55.0, "2024-01-31": 50.0, "2024-03-15": 15.0}
        assert {row.name: row.cost for row in raw.services} == {"Cloud Compute": 12.5, "Block Storage": 2.5}
        assert raw.metadata["pending_charges"] == 2

    async def test_pending_charges_skipped_for_past_range(self, executor):
        calls = []
        adapter = VultrCostAdapter({"today": date(2024, 3, 15)}, executor, transport=mock_transport(self.table(), calls))

        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 2, 29))

        assert points(raw) == {"2024-02-29": 55.0, "2024-01-31": 50.0}
        assert all(request.url.path == "/v2/billing/invoices" for request in calls)

    async def test_unavailable_is_retried(self, executor):
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                return (503, {"error": "Service Unavailable"})
            return self.invoices(request)

        adapter = VultrCostAdapter(
            {"today": "2024-03-15"}, executor, transport=mock_transport(self.table({("GET", "/v2/billing/invoices"): flaky}))
        )

        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 1, 1), date(2024, 2, 29))

        assert len(raw.daily) == 2
        assert len(attempts) == 3

    async def test_service_detail(self, executor):
        adapter = VultrCostAdapter({}, executor, transport=mock_transport(self.table()))

        detail = await adapter.fetch_service_detail(self.CREDENTIALS, "Cloud Compute", date(2024, 3, 1), date(2024, 3, 15))

        assert [(item.name, item.cost) for item in detail.items] == [("web", 12.5)]


class TestIBMCloud:
    CREDENTIALS = {"api_key": "ibm-key", "account_id": "acct-1"}

    def table(self, token_body=None):
        return {
            ("POST", "/identity/token"): token_body or {"access_token": "iam-token", "expires_in": 3600},
            ("GET", "/v4/accounts/acct-1/usage/2024-02"): {
                "currency_code": "USD",
                "resources": [
                    {
                        "resource_name": "Kubernetes Service",
                        "billable_cost": 100.0,
                        "plans": [{"plan_name": "Standard", "billable_cost": 100.0}],
                    },
                    {"resource_name": "Object Storage", "billable_cost": 20.0},
                ],
            },
            ("GET", "/v4/accounts/acct-1/usage/2024-03"): {
                "currency_code": "USD",
                "resources": [
                    {
                        "resource_name": "Kubernetes Service",
                        "billable_cost": 50.0,
                        "plans": [{"plan_name": "Standard", "billable_cost": 45.0}, {"plan_name": "Free", "billable_cost": 5.0}],
                    }
                ],
            },
        }

    async def test_one_point_per_month(self, executor):
        calls = []
        adapter = IBMCloudCostAdapter({}, executor, transport=mock_transport(self.table(), calls))

        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 2, 10), date(2024, 3, 15))

        assert points(raw) == {"2024-02-29": 120.0, "2024-03-15": 50.0}
        assert {row.name: row.cost for row in raw.services} == {"Kubernetes Service": 150.0, "Object Storage": 20.0}

        token_request, *usage_requests = calls
        assert token_request.url.host == "iam.cloud.ibm.com"
        form = parse_qs(token_request.content.decode())
        assert form["grant_type"] == ["urn:ibm:params:oauth:grant-type:apikey"]
        assert form["apikey"] == ["ibm-key"]
        assert [request.url.host for request in usage_requests] == ["billing.cloud.ibm.com"] * 2
        assert all(request.headers["Authorization"] == "Bearer iam-token" for request in usage_requests)

    async def test_missing_access_token(self, executor):
        adapter = IBMCloudCostAdapter({}, executor, transport=mock_transport(self.table(token_body={"errorCode": "BXNIM0415E"})))

        with pytest.raises(MalformedResponseError):
            await adapter.fetch(self.CREDENTIALS, date(2024, 3, 1), date(2024, 3, 15))

    async def test_service_detail_by_plan(self, executor):
        adapter = IBMCloudCostAdapter({}, executor, transport=mock_transport(self.table()))

        detail = await adapter.fetch_service_detail(
            self.CREDENTIALS, "Kubernetes Service", date(2024, 2, 1), date(2024, 3, 15)
        )

        assert {item.name: item.cost for item in detail.items} == {"Standard": 145.0, "Free": 5.0}


class TestMongoDBAtlas:
    CREDENTIALS = {"public_key": "pub", "private_key": "priv", "org_id": "org1"}  # pragma: allowlist secret
    BASE = "/api/atlas/v1.0/orgs/org1"

    def table(self):
        return {
            ("GET", f"{self.BASE}/invoices/pending"): {
                "id": "pending",
                "lineItems": [
                    {"startDate": "2024-03-01T00:00:00Z", "sku": "ATLAS_AWS_INSTANCE_M10", "clusterName": "prod", "totalPriceCents": 1234},
                    {"startDate": "2024-03-02T00:00:00Z", "sku": "ATLAS_AWS_BACKUP_SNAPSHOT_STORAGE", "totalPriceCents": 100},
                ],
            },
            ("GET", f"{self.BASE}/invoices"): {
                "results": [
                    {"id": "pending", "startDate": "2024-03-01T00:00:00Z", "endDate": "2024-04-01T00:00:00Z"},
                    {"id": "feb", "startDate": "2024-02-01T00:00:00Z", "endDate": "2024-03-01T00:00:00Z"},
                    {"id": "jan", "startDate": "2024-01-01T00:00:00Z", "endDate": "2024-02-01T00:00:00Z"},
                ]
            },
            ("GET", f"{self.BASE}/invoices/feb"): {
                "id": "feb",
                "lineItems": [
                    {"startDate": "2024-02-25T00:00:00Z", "sku": "ATLAS_AWS_DATA_TRANSFER_SAME_REGION", "totalPriceCents": 50},
                    {"startDate": "2024-02-10T00:00:00Z", "sku": "ATLAS_AWS_INSTANCE_M10", "totalPriceCents": 9999},
                ],
            },
        }

    async def test_line_items_per_day_in_dollars(self, executor):
        calls = []
        adapter = MongoDBAtlasCostAdapter({}, executor, transport=mock_transport(self.table(), calls))

        raw = await adapter.fetch(self.CREDENTIALS, date(2024, 2, 20), date(2024, 3, 2))

        assert raw.granularity == Granularity.DAILY
        assert points(raw) == {"2024-02-25": 0.5, "2024-03-01": 12.34, "2024-03-02": 1.0}
        assert {row.name: row.cost for row in raw.services} == {"Data Transfer": 0.5, "Clusters": 12.34, "Backup": 1.0}
        assert len(raw.service_daily) == 3

        requested = [request.url.path for request in calls]
        assert f"{self.BASE}/invoices/feb" in requested
        assert f"{self.BASE}/invoices/jan" not in requested

    async def test_service_detail_by_cluster(self, executor):
        adapter = MongoDBAtlasCostAdapter({}, executor, transport=mock_transport(self.table()))

        detail = await adapter.fetch_service_detail(self.CREDENTIALS, "Clusters", date(2024, 2, 20), date(2024, 3, 2))

        assert [(item.name, item.cost) for item in detail.items] == [("prod", 12.34)]

    @pytest.mark.parametrize(
        "sku,category",
        [
            ("ATLAS_AWS_INSTANCE_M10", "Clusters"),
            ("ATLAS_GCP_BACKUP_SNAPSHOT_STORAGE", "Backup"),
            ("NDS_SERVERLESS_RPU", "Serverless"),
            ("ATLAS_DATA_LAKE_AWS_DATA_SCANNED", "Data Federation"),
            ("ATLAS_AWS_DATA_TRANSFER_INTERNET", "Data Transfer"),
            ("CLASSIC_SUPPORT", "Support"),
            (None, "Other"),
        ],
    )
    def test_sku_category(self, sku, category):
        assert sku_category(sku) == category
