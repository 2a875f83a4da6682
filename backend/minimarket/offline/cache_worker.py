# Overview: Network cache worker; per-route caching strategies and sync signal relay for the offline client.

"""
NetworkCacheWorker

Sits below every outbound HTTP request of the offline client (through
CachingTransport) and answers GET requests according to the route policy:

    /api/sync/*, /api/auth/*      network only
    /api/*                        network first, api-cache fallback, 503 JSON
    /static/*, /_next/static/*    cache first (runtime cache)
    page navigations (text/html)  network first, runtime cache fallback, offline page
    anything else                 cache first (offline-cache)

Non-GET requests and non-http(s) URLs always go to the network.

Lifecycle mirrors a browser service worker: install() primes the precache
and skips waiting, activate() drops caches outside the allow-list. Until
activated, requests go straight to the network.

The worker never calls the sync manager. Sync triggers are broadcast to
registered clients as messages ({"type": "BACKGROUND_SYNC"} and so on).
"""

from __future__ import annotations

import inspect
import itertools
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable

import httpx

from .cache_storage import CacheStorage, storable_headers

logger = logging.getLogger(__name__)

CACHE_VERSION = "v1"
PRECACHE = f"minimarket-precache-{CACHE_VERSION}"
RUNTIME_CACHE = f"minimarket-runtime-{CACHE_VERSION}"
OFFLINE_CACHE = "offline-cache"
API_CACHE = "api-cache"

CACHE_ALLOW_LIST = (PRECACHE, RUNTIME_CACHE, OFFLINE_CACHE, API_CACHE)

CACHE_POLICIES = {
    OFFLINE_CACHE: {"max_entries": 200, "max_age": timedelta(days=30)},
    API_CACHE: {"max_entries": 100, "max_age": timedelta(hours=24)},
}

PRECACHE_URLS = (
    "/",
    "/login",
    "/dashboard",
    "/dashboard/products",
    "/dashboard/sales",
    "/dashboard/reports",
    "/manifest.json",
)

PASSTHROUGH_PREFIXES = ("/api/sync/", "/api/auth/")
STATIC_PREFIXES = ("/static/", "/_next/static/")

BACKGROUND_SYNC_TAG = "background-sync"
PERIODIC_SYNC_TAG = "sync-data"

OFFLINE_API_BODY = {
    "success": False,
    "error": "Offline - no cached data available",
    "offline": True,
}

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <title>Offline - Minimarket</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
  </head>
  <body>
    <h1>You are working offline</h1>
    <p>There is no network connection. You can keep selling; changes will
    sync when the connection comes back.</p>
    <button onclick="window.location.reload()">Try again</button>
  </body>
</html>
"""

ClientCallback = Callable[[dict], "Any | Awaitable[Any]"]


class ClientRegistry:
    """Clients that receive broadcast messages from the worker."""

    def __init__(self):
        self._clients: dict[int, ClientCallback] = {}
        self._ids = itertools.count(1)
        self.claimed = False

    def register(self, callback: ClientCallback) -> int:
        client_id = next(self._ids)
        self._clients[client_id] = callback
        return client_id

    def unregister(self, client_id: int) -> None:
        self._clients.pop(client_id, None)

    def match_all(self) -> list[int]:
        return list(self._clients)

    def claim(self) -> None:
        self.claimed = True

    async def post_message(self, message: dict) -> int:
        """Deliver `message` to every client. Returns how many received it."""
        delivered = 0
        for client_id, callback in list(self._clients.items()):
            try:
                result = callback(dict(message))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Client %s failed to handle %s", client_id, message.get("type"))
                continue
            delivered += 1
        return delivered


def _is_navigation(request: httpx.Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def _rebuild(response: httpx.Response, request: httpx.Request) -> httpx.Response:
    """Detached, fully read copy of a network response."""
    return httpx.Response(
        response.status_code,
        headers=storable_headers(response.headers),
        content=response.content,
        request=request,
    )


class NetworkCacheWorker:
    def __init__(
        self,
        storage: CacheStorage,
        *,
        network: httpx.AsyncBaseTransport | None = None,
        origin: str = "http://127.0.0.1:5000",
        precache_urls: Iterable[str] = PRECACHE_URLS,
    ):
        self.storage = storage
        self.network = network or httpx.AsyncHTTPTransport()
        self.origin = origin.rstrip("/")
        self.precache_urls = tuple(precache_urls)
        self.clients = ClientRegistry()
        # parsed -> installed -> activated
        self.state = "parsed"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _absolute(self, url: str) -> str:
        return url if "://" in url else f"{self.origin}{url}"

    async def install(self) -> bool:
        """
        Fetch every precache URL; store them only if all succeeded.

        Returns False (and stays uninstalled) when any of them failed.
        """
        fetched = []
        for url in self.precache_urls:
            request = httpx.Request("GET", self._absolute(url))
            try:
                response = await self._fetch_network(request)
            except httpx.TransportError as exc:
                logger.warning("Precache of %s failed: %s", url, exc)
                return False
            if not response.is_success:
                logger.warning("Precache of %s failed with %s", url, response.status_code)
                return False
            fetched.append((str(request.url), response))

        cache = self.storage.open(PRECACHE)
        for url, response in fetched:
            cache.put(url, response)
        self.state = "installed"
        logger.info("Cache worker installed (%d precached)", len(fetched))
        await self.skip_waiting()
        return True

    async def skip_waiting(self) -> None:
        if self.state == "installed":
            await self.activate()

    async def activate(self) -> list[str]:
        """Delete caches outside the allow-list and claim clients. Returns the deleted names."""
        deleted = [name for name in self.storage.keys() if name not in CACHE_ALLOW_LIST]
        for name in deleted:
            self.storage.delete(name)
        for name in CACHE_POLICIES:
            if self.storage.has(name):
                self._open(name)
        self.state = "activated"
        self.clients.claim()
        logger.info("Cache worker activated; removed caches: %s", deleted or "none")
        return deleted

    @property
    def active(self) -> bool:
        return self.state == "activated"

    def _open(self, name: str):
        return self.storage.open(name, **CACHE_POLICIES.get(name, {}))

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def _fetch_network(self, request: httpx.Request) -> httpx.Response:
        response = await self.network.handle_async_request(request)
        try:
            await response.aread()
        finally:
            await response.aclose()
        return _rebuild(response, request)

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        if not self.active or request.method != "GET" or request.url.scheme not in ("http", "https"):
            return await self._fetch_network(request)

        path = request.url.path
        if path.startswith(PASSTHROUGH_PREFIXES):
            return await self._fetch_network(request)
        if path.startswith("/api/"):
            return await self._network_first_api(request)
        if path.startswith(STATIC_PREFIXES):
            return await self._cache_first(request, RUNTIME_CACHE)
        if _is_navigation(request):
            return await self._network_first_page(request)
        return await self._cache_first(request, OFFLINE_CACHE)

    def _match(self, request: httpx.Request) -> httpx.Response | None:
        response = self.storage.match(str(request.url), request)
        if response is not None:
            response.headers["X-Cache"] = "HIT"
        return response

    async def _cache_first(self, request: httpx.Request, cache_name: str) -> httpx.Response:
        cached = self._match(request)
        if cached is not None:
            return cached
        response = await self._fetch_network(request)
        if response.is_success:
            self._open(cache_name).put(str(request.url), response)
        return response

    async def _network_first_api(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._fetch_network(request)
        except httpx.TransportError as exc:
            logger.info("Network failed for %s, trying cache: %s", request.url.path, exc)
            cached = self._match(request)
            if cached is not None:
                return cached
            return httpx.Response(
                503,
                headers={"Content-Type": "application/json"},
                content=json.dumps(OFFLINE_API_BODY).encode("utf-8"),
                request=request,
            )
        if response.is_success:
            self._open(API_CACHE).put(str(request.url), response)
        return response

    async def _network_first_page(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._fetch_network(request)
        except httpx.TransportError as exc:
            logger.info("Network failed for page %s, trying cache: %s", request.url.path, exc)
            cached = self._match(request) or self.storage.match(self._absolute("/offline.html"), request)
            if cached is not None:
                return cached
            return httpx.Response(
                200,
                headers={"Content-Type": "text/html; charset=utf-8"},
                content=OFFLINE_PAGE.encode("utf-8"),
                request=request,
            )
        if response.is_success:
            self._open(RUNTIME_CACHE).put(str(request.url), response)
        return response

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def on_message(self, data: dict | None) -> None:
        kind = (data or {}).get("type")
        if kind == "SKIP_WAITING":
            await self.skip_waiting()
        elif kind == "CLEAR_CACHE":
            cleared = self.storage.clear()
            logger.info("Cleared %d caches", cleared)

    async def on_sync(self, tag: str) -> int:
        if tag != BACKGROUND_SYNC_TAG:
            return 0
        return await self.clients.post_message({
            "type": "BACKGROUND_SYNC",
            "message": "Performing background sync...",
        })

    async def on_periodic_sync(self, tag: str) -> int:
        if tag != PERIODIC_SYNC_TAG:
            return 0
        return await self.clients.post_message({
            "type": "PERIODIC_SYNC",
            "message": "Periodic sync requested",
        })

    async def on_push(self, data: str | None = None) -> int:
        return await self.clients.post_message({
            "type": "PUSH_NOTIFICATION",
            "title": "Minimarket",
            "body": data or "New notification from the minimarket",
        })

    async def on_connectivity_change(self, online: bool) -> int:
        if not online:
            return 0
        return await self.on_sync(BACKGROUND_SYNC_TAG)


class CachingTransport(httpx.AsyncBaseTransport):
    """httpx transport that routes every request through a NetworkCacheWorker."""

    def __init__(self, worker: NetworkCacheWorker):
        self.worker = worker

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.worker.fetch(request)

    async def aclose(self) -> None:
        await self.worker.network.aclose()
