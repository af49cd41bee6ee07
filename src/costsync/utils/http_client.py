"""Async HTTP client utilities for REST-based billing providers"""

import logging
from typing import Any

import httpx

from ..errors import MalformedResponseError, error_for_status

logger = logging.getLogger(__name__)


class HTTPClient:
    """Thin httpx wrapper that maps provider failures onto the error taxonomy"""

    def __init__(
        self,
        base_url: str,
        provider: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout
        self.headers = headers or {}
        self.auth = auth
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
            auth=self.auth,
            transport=self.transport,
        )

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """Make a request and return the decoded JSON body"""
        async with self._client() as client:
            response = await client.request(method, path, **kwargs)
        return self.handle_response(response)

    async def get(self, path: str, params: dict | None = None, **kwargs) -> Any:
        """Make GET request"""
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        """Make POST request"""
        return await self.request("POST", path, **kwargs)

    def handle_response(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            message = f"{self.provider} API error {response.status_code}: {_error_detail(response)}"
            raise error_for_status(response.status_code, message, self.provider, retry_after)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.provider} returned a non-JSON response: {e}", provider=self.provider
            )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or response.text[:200]

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        for key in ("message", "error_description", "detail", "errorMessage", "reason"):
            if body.get(key):
                return str(body[key])
        if isinstance(body.get("errors"), list) and body["errors"]:
            first = body["errors"][0]
            return str(first.get("reason") if isinstance(first, dict) else first)
        if error:
            return str(error)
    return response.reason_phrase or ""
