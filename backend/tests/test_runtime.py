"""
Offline runtime wiring and connectivity tests.

Verifies:
- The connectivity monitor reports transitions only
- The HTTP probe treats a 2xx health check as online
- A background-sync broadcast drives a full sync through the cache worker
"""

import asyncio

import httpx

from minimarket.extensions import db
from minimarket.models import Product
from minimarket.offline import OfflineRuntime, OfflineSettings
from minimarket.offline.connectivity import (
    ConnectivityMonitor,
    HttpConnectivityProbe,
    StaticConnectivityProbe,
)

SERVER = "http://minimarket.test"


def _unreachable(request):
    raise httpx.ConnectError("network unreachable", request=request)


class TestConnectivity:
    def test_monitor_notifies_on_transitions_only(self):
        probe = StaticConnectivityProbe(True)
        monitor = ConnectivityMonitor(probe, interval=0.01)
        seen = []
        monitor.add_listener(seen.append)

        async def scenario():
            await monitor.check()
            await monitor.check()
            probe.set_online(False)
            await monitor.check()
            probe.set_online(True)
            await monitor.check()

        asyncio.run(scenario())

        assert seen == [False, True]
        assert monitor.online is True

    def test_monitor_start_and_stop(self):
        monitor = ConnectivityMonitor(StaticConnectivityProbe(False), interval=0.01)

        async def scenario():
            monitor.start()
            await asyncio.sleep(0.05)
            running = monitor.running
            await monitor.stop()
            return running

        assert asyncio.run(scenario()) is True
        assert monitor.running is False
        assert monitor.online is False

    def test_http_probe_reads_health(self, server_transport):
        online = HttpConnectivityProbe(f"{SERVER}/api/health", transport=server_transport)
        offline = HttpConnectivityProbe(f"{SERVER}/api/health", transport=httpx.MockTransport(_unreachable))

        assert asyncio.run(online.is_online()) is True
        assert asyncio.run(offline.is_online()) is False


class TestRuntime:
    def _runtime(self, server_transport, token):
        settings = OfflineSettings(
            database_url="sqlite://",
            cache_url="sqlite://",
            server_url=SERVER,
            api_token=token,
        )
        return OfflineRuntime(
            settings,
            network=server_transport,
            probe=StaticConnectivityProbe(True),
            precache_urls=(),
        )

    def test_background_sync_broadcast_runs_full_sync(self, app, server_transport, cashier_token):
        runtime = self._runtime(server_transport, cashier_token)

        async def scenario():
            await runtime.start(periodic=False, monitor=False)
            try:
                runtime.store.create_product({"name": "Cola", "code": "BEB001", "price": 2.5, "stock": 45})
                delivered = await runtime.worker.on_sync("background-sync")
                return delivered, runtime.store.queue_stats(), runtime.store.get_checkpoint()
            finally:
                await runtime.shutdown()

        delivered, stats, checkpoint = asyncio.run(scenario())

        assert delivered == 1
        assert stats["pending"] == 0
        assert checkpoint is not None
        assert db.session.query(Product).filter_by(code="BEB001").count() == 1
        assert runtime.started is False

    def test_start_is_idempotent(self, app, server_transport, cashier_token):
        runtime = self._runtime(server_transport, cashier_token)

        async def scenario():
            await runtime.start(periodic=False, monitor=False)
            await runtime.start(periodic=False, monitor=False)
            clients = runtime.worker.clients.match_all()
            await runtime.shutdown()
            return clients

        assert len(asyncio.run(scenario())) == 1
        assert runtime.worker.active is True
