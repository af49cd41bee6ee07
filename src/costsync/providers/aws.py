"""
AWS Cost Explorer adapter.

Granularity: daily. Cost Explorer returns one ResultsByTime entry per day,
grouped by SERVICE; the end of a Cost Explorer time period is exclusive so
the inclusive end date is shifted by one day.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError

from ..errors import (
    AuthenticationError,
    CloudProviderError,
    InvalidRequestError,
    MalformedResponseError,
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

THROTTLING_CODES = {"Throttling", "ThrottlingException", "LimitExceededException", "TooManyRequestsException"}
AUTH_CODES = {
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
    "AuthFailure",
}
INVALID_REQUEST_CODES = {
    "ValidationException",
    "InvalidParameterValue",
    "DataUnavailableException",
    "BillExpirationException",
    "InvalidNextTokenException",
    "RequestChangedException",
}


@ProviderFactory.register_provider
class AWSCostAdapter(ProviderAdapter):
    """AWS Cost Explorer adapter."""

    provider_id = ProviderId.AWS
    display_name = "AWS"
    aliases = ("amazon",)
    granularity = Granularity.DAILY
    required_credentials = ("access_key_id", "secret_access_key")

    def __init__(self, config=None, executor=None):
        super().__init__(config, executor)
        self.metric = self.config.get("metric", "UnblendedCost")

    def _create_client(self, credentials: Credentials):
        session = boto3.session.Session(
            aws_access_key_id=credentials["access_key_id"],
            aws_secret_access_key=credentials["secret_access_key"],
            aws_session_token=credentials.get("session_token"),
        )
        # Cost Explorer is only available in us-east-1; retries belong to the executor
        config = Config(region_name="us-east-1", retries={"max_attempts": 1, "mode": "standard"})
        return session.client("ce", config=config)

    def _request_params(
        self,
        start_date: date,
        end_date: date,
        group_key: str,
        filter_by: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        params = {
            "TimePeriod": {
                "Start": start_date.isoformat(),
                "End": (end_date + timedelta(days=1)).isoformat(),
            },
            "Granularity": "DAILY",
            "Metrics": [self.metric],
            "GroupBy": [{"Type": "DIMENSION", "Key": group_key}],
        }
        if filter_by:
            params["Filter"] = filter_by
        return params

    async def _get_cost_and_usage(self, client, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch every page of ResultsByTime."""
        results: list[dict[str, Any]] = []
        next_token = None
        while True:
            page_params = dict(params)
            if next_token:
                page_params["NextPageToken"] = next_token

            response = await self.call(lambda: self._invoke(client, page_params))
            results.extend(response.get("ResultsByTime", []))
            next_token = response.get("NextPageToken")
            if not next_token:
                return results

    async def _invoke(self, client, params: dict[str, Any]) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(client.get_cost_and_usage, **params)
        except ClientError as e:
            raise self._translate_client_error(e)
        except NoCredentialsError as e:
            raise AuthenticationError(f"AWS credentials rejected: {e}", provider=self.provider_name)

    async def fetch(self, credentials: Credentials, start_date: date, end_date: date) -> ProviderRawData:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._create_client(credentials)

        results = await self._get_cost_and_usage(
            client, self._request_params(start_date, end_date, "SERVICE")
        )
        return self._parse_results(results, start_date, end_date)

    def _parse_results(self, results: list[dict[str, Any]], start_date: date, end_date: date) -> ProviderRawData:
        daily_totals: dict[str, float] = defaultdict(float)
        service_totals: dict[str, float] = defaultdict(float)
        service_daily: list[RawServiceDailyCost] = []
        currency = "USD"
        estimated = False

        for result in results:
            day = str(result.get("TimePeriod", {}).get("Start"))
            estimated = estimated or bool(result.get("Estimated"))
            groups = result.get("Groups", [])

            if not groups:
                total = result.get("Total", {}).get(self.metric)
                if total is not None:
                    daily_totals[day] += float(total.get("Amount", 0))
                continue

            for group in groups:
                service = (group.get("Keys") or ["Other"])[0]
                metric = group.get("Metrics", {}).get(self.metric, {})
                amount = metric.get("Amount")
                currency = metric.get("Unit") or currency
                service_daily.append(
                    RawServiceDailyCost(date=day, service=service, cost=amount, is_credit=_is_negative(amount))
                )
                try:
                    value = float(amount)
                except (TypeError, ValueError):
                    # left for the normalizer to reject via the service_daily row
                    continue
                daily_totals[day] += value
                service_totals[service] += value

        return self.empty_result(
            start_date,
            end_date,
            currency=currency,
            daily=[
                RawCostRow(date=day, cost=cost, is_credit=cost < 0)
                for day, cost in sorted(daily_totals.items())
            ],
            services=[
                RawServiceCost(name=name, cost=cost, is_credit=cost < 0)
                for name, cost in sorted(service_totals.items(), key=lambda item: -item[1])
            ],
            service_daily=service_daily,
            metadata={"estimated": estimated, "metric": self.metric},
        )

    async def fetch_service_detail(
        self, credentials: Credentials, service_name: str, start_date: date, end_date: date
    ) -> ProviderRawDetail:
        self.validate_credentials(credentials)
        start_date, end_date = self.validate_date_range(start_date, end_date)
        client = self._create_client(credentials)

        params = self._request_params(
            start_date,
            end_date,
            "USAGE_TYPE",
            filter_by={"Dimensions": {"Key": "SERVICE", "Values": [service_name]}},
        )
        results = await self._get_cost_and_usage(client, params)

        usage_totals: dict[str, float] = defaultdict(float)
        daily_totals: dict[str, float] = defaultdict(float)
        for result in results:
            day = str(result.get("TimePeriod", {}).get("Start"))
            for group in result.get("Groups", []):
                usage_type = (group.get("Keys") or ["Other"])[0]
                raw_amount = group.get("Metrics", {}).get(self.metric, {}).get("Amount", 0)
                try:
                    amount = float(raw_amount)
                except (TypeError, ValueError):
                    raise MalformedResponseError(
                        f"Cost Explorer returned a non-numeric {self.metric} amount {raw_amount!r} for {usage_type}",
                        provider=self.provider_name,
                    )
                usage_totals[usage_type] += amount
                daily_totals[day] += amount

        return ProviderRawDetail(
            provider=self.provider_name,
            service_name=service_name,
            start_date=start_date,
            end_date=end_date,
            items=[RawServiceCost(name=name, cost=cost) for name, cost in usage_totals.items()],
            daily=[RawCostRow(date=day, cost=cost) for day, cost in sorted(daily_totals.items())],
        )

    def _translate_client_error(self, error: ClientError) -> CloudProviderError:
        """Handle AWS client errors appropriately."""
        error_code = error.response.get("Error", {}).get("Code", "")
        error_message = error.response.get("Error", {}).get("Message", str(error))
        status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

        if error_code in THROTTLING_CODES:
            return RateLimitError(
                f"AWS Cost Explorer API rate limit exceeded: {error_message}",
                provider=self.provider_name,
            )
        if error_code in AUTH_CODES:
            return AuthenticationError(f"AWS unauthorized: {error_message}", provider=self.provider_name)
        if error_code in INVALID_REQUEST_CODES:
            return InvalidRequestError(
                f"AWS invalid request ({error_code}): {error_message}", provider=self.provider_name
            )
        if status_code and status_code < 500:
            return InvalidRequestError(
                f"AWS Cost Explorer API error ({error_code}): {error_message}",
                provider=self.provider_name,
                status_code=status_code,
            )
        return UpstreamUnavailableError(
            f"AWS Cost Explorer API error ({error_code}): {error_message}",
            provider=self.provider_name,
            status_code=status_code,
        )


def _is_negative(amount: Any) -> bool:
    try:
        return float(amount) < 0
    except (TypeError, ValueError):
        return False
