# Overview: HTTP client for the server's /api/sync endpoints.

"""
SyncApi

Thin async wrapper over httpx.AsyncClient that turns HTTP outcomes into the
offline error taxonomy:

- no token, 401/403, 400/404/409/422 -> FatalSyncError (retrying cannot help)
- timeout, connection error, 429, 5xx, unreadable body -> TransientNetworkError
"""

from __future__ import annotations

import logging
from typing import Callable, Union

import httpx

from .errors import FatalSyncError, TransientNetworkError

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/sync/upload"
DOWNLOAD_PATH = "/api/sync/download"

TokenSource = Union[str, Callable[[], Union[str, None]], None]


class SyncApi:
    def __init__(
        self,
        base_url: str,
        *,
        token: TokenSource = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def set_token(self, token: TokenSource) -> None:
        self._token = token

    def _auth_headers(self) -> dict:
        token = self._token() if callable(self._token) else self._token
        if not token:
            raise FatalSyncError("No authentication token")
        return {"Authorization": f"Bearer {token}"}

    async def _send(self, method: str, path: str, **kwargs) -> dict:
        headers = self._auth_headers()
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{method} {path} returned {status}", status_code=status)
        if status >= 400:
            raise FatalSyncError(f"{method} {path} rejected ({status}): {_error_text(response)}", status_code=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientNetworkError(f"{method} {path} returned an unreadable body", status_code=status) from exc
        if not isinstance(body, dict):
            raise TransientNetworkError(f"{method} {path} returned an unexpected body", status_code=status)
        if body.get("success") is False:
            raise FatalSyncError(body.get("error") or f"{method} {path} failed", status_code=status)
        return body

    async def upload(self, payload: dict) -> dict:
        logger.debug("Uploading %s", {k: len(v) for k, v in payload.items() if isinstance(v, list)})
        return await self._send("POST", UPLOAD_PATH, json=payload)

    async def download(
        self,
        *,
        last_sync: str | None = None,
        include_products: bool = True,
        include_sales: bool = True,
        own_sales_only: bool = False,
    ) -> dict:
        params = {
            "includeProducts": "true" if include_products else "false",
            "includeSales": "true" if include_sales else "false",
            "includeOwnSalesOnly": "true" if own_sales_only else "false",
        }
        if last_sync:
            params["lastSyncTimestamp"] = last_sync
        return await self._send("GET", DOWNLOAD_PATH, params=params)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text[:200]
