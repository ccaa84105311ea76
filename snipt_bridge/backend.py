"""HTTP client for the Snipt snippet REST API.

Every call is a bearer-authenticated request made on behalf of exactly one
caller: the client is constructed with that caller's API key or OAuth
access token and never shares it with another client instance.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from snipt_bridge.debug import mask_secret
from snipt_bridge.exceptions import BackendError
from snipt_bridge.models import Snippet, SnippetCreate, SnippetFilter, SnippetUpdate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class SnippetApiClient:
    """Thin async client over ``/api/snippets``."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://snipt.app",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def __repr__(self) -> str:
        return f"SnippetApiClient(base_url={self.base_url!r}, token={mask_secret(self.token)})"

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"API request: {method} {url} token={mask_secret(self.token)}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.request(
                    method, url, headers=headers, json=json, params=params
                )
        except httpx.TimeoutException as e:
            raise BackendError(f"Snippet API timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise BackendError(f"Snippet API request failed: {e}") from e

        logger.debug(f"API response: {response.status_code} {method} {url}")

        if not response.is_success:
            raise BackendError(_error_message(response), status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Snippet API returned invalid JSON ({response.status_code})",
                status_code=response.status_code,
            ) from e

    async def search_snippets(self, filters: SnippetFilter) -> list[Snippet]:
        data = await self._request("GET", "/api/snippets", params=filters.to_params())
        if not isinstance(data, list):
            raise BackendError("Snippet API returned an unexpected response")
        return [_parse_snippet(item) for item in data]

    async def get_snippet(self, snippet_id: str) -> Snippet:
        data = await self._request("GET", f"/api/snippets/{snippet_id}")
        return _parse_snippet(data)

    async def create_snippet(self, fields: SnippetCreate) -> Snippet:
        data = await self._request(
            "POST", "/api/snippets", json=fields.model_dump(exclude_none=True)
        )
        return _parse_snippet(data)

    async def update_snippet(self, snippet_id: str, fields: SnippetUpdate) -> Snippet:
        data = await self._request(
            "PATCH", f"/api/snippets/{snippet_id}", json=fields.to_payload()
        )
        return _parse_snippet(data)


def _error_message(response: httpx.Response) -> str:
    """Extract the backend's error text from a failed response."""
    fallback = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text or fallback


def _parse_snippet(data: Any) -> Snippet:
    try:
        return Snippet.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Malformed snippet from backend: {e}")
        raise BackendError("Snippet API returned a malformed snippet") from e
