"""
Tests for the AWS Cost Explorer adapter, using botocore's Stubber.
"""

from datetime import date

import boto3
import pytest
from botocore.stub import Stubber

from costsync.errors import (
    AuthenticationError,
    ErrorKind,
    InvalidRequestError,
    MalformedResponseError,
    RateLimitError,
)
from costsync.providers.aws import AWSCostAdapter

CREDENTIALS = {"access_key_id": "AKIATEST", "secret_access_key": "secret"}  # pragma: allowlist secret


def group(service: str, amount: str) -> dict:
    return {"Keys": [service], "Metrics": {"UnblendedCost": {"Amount": amount, "Unit": "USD"}}}


def day_result(day: str, next_day: str, groups: list, estimated: bool = False) -> dict:
    return {
        "TimePeriod": {"Start": day, "End": next_day},
        "Total": {},
        "Groups": groups,
        "Estimated": estimated,
    }


def expected_params(start: str, end: str, key: str = "SERVICE", **extra) -> dict:
    params = {
        "TimePeriod": {"Start": start, "End": end},
        "Granularity": "DAILY",
        "Metrics": ["UnblendedCost"],
        "GroupBy": [{"Type": "DIMENSION", "Key": key}],
    }
    params.update(extra)
    return params


@pytest.fixture
def ce_client():
    return boto3.client(
        "ce",
        region_name="us-east-1",
        aws_access_key_id="AKIATEST",
        aws_secret_access_key="secret",  # pragma: allowlist secret
    )


@pytest.fixture
def stubber(ce_client):
    with Stubber(ce_client) as stub:
        yield stub
        stub.assert_no_pending_responses()


@pytest.fixture
def adapter(executor, ce_client, monkeypatch):
    adapter = AWSCostAdapter({}, executor)
    monkeypatch.setattr(adapter, "_create_client", lambda credentials: ce_client)
    return adapter


class TestAWSCostAdapter:
    async def test_fetch_daily_by_service(self, adapter, stubber):
        stubber.add_response(
            "get_cost_and_usage",
            {
                "ResultsByTime": [
                    day_result("2024-03-01", "2024-03-02", [group("Amazon EC2", "10.50"), group("Tax", "1.00")]),
                    day_result(
                        "2024-03-02",
                        "2024-03-03",
                        [group("Amazon EC2", "12.00"), group("Amazon S3", "3.00")],
                        estimated=True,
                    ),
                ]
            },
            expected_params("2024-03-01", "2024-03-03"),
        )

        raw = await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 2))

        assert [(row.date, row.cost) for row in raw.daily] == [("2024-03-01", 11.5), ("2024-03-02", 15.0)]
        assert {row.name: row.cost for row in raw.services} == {"Amazon EC2": 22.5, "Tax": 1.0, "Amazon S3": 3.0}
        assert len(raw.service_daily) == 4
        assert raw.metadata["estimated"] is True
        assert raw.currency == "USD"

    async def test_pagination(self, adapter, stubber):
        stubber.add_response(
            "get_cost_and_usage",
            {
                "ResultsByTime": [day_result("2024-03-01", "2024-03-02", [group("Amazon EC2", "1")])],
                "NextPageToken": "page-2",
            },
            expected_params("2024-03-01", "2024-03-03"),
        )
        stubber.add_response(
            "get_cost_and_usage",
            {"ResultsByTime": [day_result("2024-03-02", "2024-03-03", [group("Amazon EC2", "2")])]},
            expected_params("2024-03-01", "2024-03-03", NextPageToken="page-2"),
        )

        raw = await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 2))

        assert [row.cost for row in raw.daily] == [1.0, 2.0]

    async def test_credit_rows_marked(self, adapter, stubber):
        stubber.add_response(
            "get_cost_and_usage",
            {"ResultsByTime": [day_result("2024-03-01", "2024-03-02", [group("Credits", "-5.00")])]},
            expected_params("2024-03-01", "2024-03-02"),
        )

        raw = await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 1))

        assert raw.service_daily[0].is_credit is True
        assert raw.daily[0].is_credit is True

    async def test_throttling_is_retried(self, adapter, stubber):
        stubber.add_client_error(
            "get_cost_and_usage", service_error_code="ThrottlingException", service_message="Rate exceeded"
        )
        stubber.add_response(
            "get_cost_and_usage",
            {"ResultsByTime": [day_result("2024-03-01", "2024-03-02", [group("Amazon EC2", "4")])]},
            expected_params("2024-03-01", "2024-03-02"),
        )

        raw = await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 1))

        assert raw.daily[0].cost == 4.0

    async def test_throttling_exhausted(self, single_attempt, ce_client, monkeypatch, stubber):
        adapter = AWSCostAdapter({}, single_attempt)
        monkeypatch.setattr(adapter, "_create_client", lambda credentials: ce_client)
        stubber.add_client_error("get_cost_and_usage", service_error_code="ThrottlingException")

        with pytest.raises(RateLimitError):
            await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 1))

    async def test_access_denied(self, adapter, stubber):
        stubber.add_client_error(
            "get_cost_and_usage", service_error_code="AccessDeniedException", http_status_code=403
        )

        with pytest.raises(AuthenticationError):
            await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 1))

    async def test_data_unavailable(self, adapter, stubber):
        stubber.add_client_error("get_cost_and_usage", service_error_code="DataUnavailableException")

        with pytest.raises(InvalidRequestError):
            await adapter.fetch(CREDENTIALS, date(2024, 3, 1), date(2024, 3, 1))

    async def test_service_detail_by_usage_type(self, adapter, stubber):
        stubber.add_response(
            "get_cost_and_usage",
            {
                "ResultsByTime": [
                    day_result(
                        "2024-03-01",
                        "2024-03-02",
                        [group("BoxUsage:t3.micro", "2.00"), group("EBS:VolumeUsage.gp3", "0.50")],
                    ),
                    day_result("2024-03-02", "2024-03-03", [group("BoxUsage:t3.micro", "2.00")]),
                ]
            },
            expected_params(
                "2024-03-01",
                "2024-03-03",
                key="USAGE_TYPE",
                Filter={"Dimensions": {"Key": "SERVICE", "Values": ["Amazon EC2"]}},
            ),
        )

        detail = await adapter.fetch_service_detail(CREDENTIALS, "Amazon EC2", date(2024, 3, 1), date(2024, 3, 2))

        assert detail.service_name == "Amazon EC2"
        assert {item.name: item.cost for item in detail.items} == {
            "BoxUsage:t3.micro": 4.0,
            "EBS:VolumeUsage.gp3": 0.5,
        }
        assert [row.cost for row in detail.daily] == [2.5, 2.0]

    async def test_service_detail_non_numeric_amount(self, adapter, stubber):
        stubber.add_response(
            "get_cost_and_usage",
            {"ResultsByTime": [day_result("2024-03-01", "2024-03-02", [group("BoxUsage:t3.micro", "n/a")])]},
            expected_params(
                "2024-03-01",
                "2024-03-02",
                key="USAGE_TYPE",
                Filter={"Dimensions": {"Key": "SERVICE", "Values": ["Amazon EC2"]}},
            ),
        )

        with pytest.raises(MalformedResponseError, match="BoxUsage:t3.micro") as exc_info:
            await adapter.fetch_service_detail(CREDENTIALS, "Amazon EC2", date(2024, 3, 1), date(2024, 3, 1))

        assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED

    def test_metric_from_config(self):
        assert AWSCostAdapter({"metric": "NetAmortizedCost"}).metric == "NetAmortizedCost"
