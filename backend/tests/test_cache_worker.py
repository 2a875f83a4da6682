"""
Network cache worker and cache storage tests.

Verifies:
- Install primes the precache all-or-nothing, then activates
- Activation drops caches outside the allow-list
- Route strategies: API network-first, static cache-first, pages with an
  offline fallback, sync/auth and non-GET requests never cached
- Entry limits and max age on named caches
- Sync triggers are broadcast to every registered client
"""

import asyncio
import json
from datetime import datetime, timedelta

import httpx
import pytest

from minimarket.offline.cache_storage import CacheStorage
from minimarket.offline.cache_worker import (
    API_CACHE,
    OFFLINE_CACHE,
    PRECACHE,
    RUNTIME_CACHE,
    CachingTransport,
    NetworkCacheWorker,
)

ORIGIN = "http://shop.test"
HTML = {"Accept": "text/html,application/xhtml+xml"}


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeNetwork:
    """Origin server double; raises ConnectError while offline."""

    def __init__(self):
        self.online = True
        self.hits = []
        self.missing = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        path = request.url.path
        self.hits.append(path)
        if path in self.missing:
            return httpx.Response(404, json={"error": "Not found"})
        if path.startswith("/api/"):
            return httpx.Response(200, json={"path": path, "hit": len(self.hits)})
        return httpx.Response(200, text=f"<html>{path}</html>", headers={"Content-Type": "text/html"})


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def storage(clock):
    cache = CacheStorage("sqlite://", clock=clock).init()
    yield cache
    cache.close()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def worker(storage, network):
    return NetworkCacheWorker(
        storage,
        network=httpx.MockTransport(network),
        origin=ORIGIN,
        precache_urls=("/", "/login"),
    )


def run(coro):
    return asyncio.run(coro)


def get(worker, path, headers=None, method="GET"):
    return run(worker.fetch(httpx.Request(method, f"{ORIGIN}{path}", headers=headers)))


def installed(worker):
    assert run(worker.install()) is True
    return worker


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    def test_install_precaches_and_activates(self, worker, storage):
        installed(worker)

        assert worker.state == "activated"
        assert worker.clients.claimed is True
        assert storage.open(PRECACHE).keys() == [f"{ORIGIN}/", f"{ORIGIN}/login"]

    def test_install_is_all_or_nothing(self, worker, storage, network):
        network.missing.add("/login")

        assert run(worker.install()) is False
        assert worker.state == "parsed"
        assert storage.has(PRECACHE) is False

    def test_activate_drops_old_generations(self, worker, storage):
        storage.open("minimarket-precache-v0")
        storage.open(API_CACHE)

        installed(worker)

        assert "minimarket-precache-v0" not in storage.keys()
        assert API_CACHE in storage.keys()

    def test_requests_bypass_cache_until_activated(self, worker, network):
        network.online = False
        with pytest.raises(httpx.ConnectError):
            get(worker, "/api/products")


# =============================================================================
# ROUTE STRATEGIES
# =============================================================================


class TestStrategies:
    def test_api_falls_back_to_cache(self, worker, network):
        installed(worker)
        fresh = get(worker, "/api/products?page=1")

        network.online = False
        cached = get(worker, "/api/products?page=1")

        assert cached.status_code == 200
        assert cached.headers["X-Cache"] == "HIT"
        assert cached.json() == fresh.json()

    def test_api_without_cache_answers_offline_json(self, worker, network):
        installed(worker)
        network.online = False

        resp = get(worker, "/api/products")

        assert resp.status_code == 503
        body = json.loads(resp.content)
        assert body == {"success": False, "error": "Offline - no cached data available", "offline": True}

    def test_api_errors_are_not_cached(self, worker, network):
        installed(worker)
        network.missing.add("/api/products/9")
        assert get(worker, "/api/products/9").status_code == 404

        network.online = False
        assert get(worker, "/api/products/9").status_code == 503

    def test_sync_and_auth_are_network_only(self, worker, network, storage):
        installed(worker)
        get(worker, "/api/sync/download")
        get(worker, "/api/auth/me")

        assert storage.has(API_CACHE) is False
        network.online = False
        with pytest.raises(httpx.ConnectError):
            get(worker, "/api/sync/download")

    def test_non_get_is_never_cached(self, worker, network):
        installed(worker)
        network.online = False
        with pytest.raises(httpx.ConnectError):
            get(worker, "/api/products", method="POST")

    def test_static_assets_are_cache_first(self, worker, network):
        installed(worker)
        get(worker, "/static/app.js")
        hits = len(network.hits)

        again = get(worker, "/static/app.js")

        assert len(network.hits) == hits
        assert again.headers["X-Cache"] == "HIT"

    def test_pages_fall_back_to_cache_then_offline_page(self, worker, network):
        installed(worker)
        get(worker, "/dashboard", headers=HTML)

        network.online = False
        cached = get(worker, "/dashboard", headers=HTML)
        fallback = get(worker, "/dashboard/never-visited", headers=HTML)

        assert cached.text == "<html>/dashboard</html>"
        assert fallback.status_code == 200
        assert "You are working offline" in fallback.text

    def test_other_requests_use_offline_cache(self, worker, network, storage):
        installed(worker)
        get(worker, "/manifest.json")

        network.online = False
        resp = get(worker, "/manifest.json")

        assert resp.headers["X-Cache"] == "HIT"
        assert len(storage.open(OFFLINE_CACHE)) == 1

    def test_caching_transport_serves_httpx_clients(self, worker, network):
        installed(worker)

        async def scenario():
            async with httpx.AsyncClient(base_url=ORIGIN, transport=CachingTransport(worker)) as client:
                first = await client.get("/api/products")
                network.online = False
                second = await client.get("/api/products")
                return first, second

        first, second = run(scenario())

        assert second.json() == first.json()
        assert second.headers["X-Cache"] == "HIT"


# =============================================================================
# CACHE POLICIES
# =============================================================================


class TestPolicies:
    def test_least_recently_used_entry_is_evicted(self, storage, clock):
        cache = storage.open("limited", max_entries=2)
        cache.put("a", httpx.Response(200, content=b"a"))
        clock.advance(seconds=1)
        cache.put("b", httpx.Response(200, content=b"b"))
        clock.advance(seconds=1)
        assert cache.match("a").content == b"a"
        clock.advance(seconds=1)

        cache.put("c", httpx.Response(200, content=b"c"))

        assert cache.keys() == ["a", "c"]

    def test_expired_entries_are_dropped(self, storage, clock):
        cache = storage.open(API_CACHE, max_age=timedelta(hours=24))
        cache.put("x", httpx.Response(200, content=b"x"))

        clock.advance(hours=23)
        assert cache.match("x") is not None
        clock.advance(hours=2)
        assert cache.match("x") is None
        assert len(cache) == 0

    def test_expiry_survives_restart(self, tmp_path, clock):
        url = f"sqlite:///{tmp_path / 'cache.sqlite3'}"
        before = CacheStorage(url, clock=clock).init()
        before.open(API_CACHE, max_age=timedelta(hours=24)).put(
            f"{ORIGIN}/api/products", httpx.Response(200, json={"old": True})
        )
        before.close()

        clock.advance(days=3)
        network = FakeNetwork()
        network.online = False
        after = CacheStorage(url, clock=clock).init()
        try:
            assert after.open(API_CACHE).max_age == timedelta(hours=24)
            worker = NetworkCacheWorker(
                after, network=httpx.MockTransport(network), origin=ORIGIN, precache_urls=()
            )
            installed(worker)
            resp = get(worker, "/api/products")
            remaining = len(after.open(API_CACHE))
        finally:
            after.close()

        assert resp.status_code == 503
        assert json.loads(resp.content)["offline"] is True
        assert remaining == 0

    def test_activate_applies_policies_to_existing_caches(self, worker, storage):
        storage.open(OFFLINE_CACHE)

        installed(worker)

        assert storage.open(OFFLINE_CACHE).max_entries == 200
        assert storage.open(OFFLINE_CACHE).max_age == timedelta(days=30)

    def test_api_cache_limit(self, worker, storage):
        installed(worker)
        for page in range(105):
            get(worker, f"/api/products?page={page}")

        assert len(storage.open(API_CACHE)) == 100

    def test_clear_cache_message(self, worker, storage):
        installed(worker)
        get(worker, "/static/app.js")

        run(worker.on_message({"type": "CLEAR_CACHE"}))

        assert storage.keys() == []
        assert storage.match(f"{ORIGIN}/static/app.js") is None

    def test_runtime_cache_has_no_limit(self, worker, storage):
        installed(worker)
        get(worker, "/static/a.js")
        get(worker, "/static/b.js")

        assert len(storage.open(RUNTIME_CACHE)) == 2


# =============================================================================
# BROADCASTS
# =============================================================================


class TestBroadcasts:
    def test_sync_tags_reach_every_client(self, worker):
        received = []

        async def async_client(message):
            received.append(("async", message["type"]))

        worker.clients.register(lambda message: received.append(("sync", message["type"])))
        worker.clients.register(async_client)

        assert run(worker.on_sync("background-sync")) == 2
        assert run(worker.on_sync("unknown-tag")) == 0
        assert run(worker.on_periodic_sync("sync-data")) == 2

        assert received == [
            ("sync", "BACKGROUND_SYNC"),
            ("async", "BACKGROUND_SYNC"),
            ("sync", "PERIODIC_SYNC"),
            ("async", "PERIODIC_SYNC"),
        ]

    def test_reconnect_triggers_background_sync(self, worker):
        received = []
        worker.clients.register(received.append)

        assert run(worker.on_connectivity_change(False)) == 0
        assert run(worker.on_connectivity_change(True)) == 1
        assert received[0]["type"] == "BACKGROUND_SYNC"

    def test_failing_client_does_not_block_others(self, worker):
        received = []

        def broken(message):
            raise RuntimeError("client crashed")

        worker.clients.register(broken)
        worker.clients.register(received.append)

        assert run(worker.on_push("Stock arrived")) == 1
        assert received[0] == {"type": "PUSH_NOTIFICATION", "title": "Minimarket", "body": "Stock arrived"}

    def test_unregistered_client_gets_nothing(self, worker):
        received = []
        client_id = worker.clients.register(received.append)
        worker.clients.unregister(client_id)

        assert run(worker.on_sync("background-sync")) == 0
        assert worker.clients.match_all() == []
