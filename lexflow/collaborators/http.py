"""HTTP integration connector built on httpx."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from .base import IntegrationResponse, IntegrationTimeout

logger = logging.getLogger(__name__)


class HttpIntegrationConnector:
    """Invoke external REST endpoints.

    Relative endpoints are resolved against ``credentials['base_url']``; an
    ``api_key`` credential is sent as a bearer token.
    """

    def __init__(
        self, default_timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._default_timeout = default_timeout
        self._client = client

    async def invoke(
        self,
        endpoint: str,
        payload: Mapping[str, Any],
        credentials: Optional[Mapping[str, Any]] = None,
        method: str = "POST",
        timeout: Optional[float] = None,
    ) -> IntegrationResponse:
        credentials = credentials or {}
        url = endpoint
        base_url = credentials.get("base_url")
        if base_url and not endpoint.startswith(("http://", "https://")):
            url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        headers = {}
        if credentials.get("api_key"):
            headers["Authorization"] = f"Bearer {credentials['api_key']}"

        request_kwargs: dict[str, Any] = {"headers": headers}
        if method.upper() in ("GET", "DELETE"):
            request_kwargs["params"] = dict(payload)
        else:
            request_kwargs["json"] = dict(payload)

        client = self._client or httpx.AsyncClient()
        try:
            response = await client.request(
                method.upper(),
                url,
                timeout=timeout or self._default_timeout,
                **request_kwargs,
            )
        except httpx.TimeoutException as e:
            raise IntegrationTimeout(f"{method} {url} timed out") from e
        finally:
            if self._client is None:
                await client.aclose()

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        logger.info(f"Integration {method} {url} -> {response.status_code}")
        return IntegrationResponse(
            status_code=response.status_code, body=body, headers=dict(response.headers)
        )
