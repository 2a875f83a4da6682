# Overview: Wires the offline client together with an explicit start/shutdown lifecycle.

"""
OfflineRuntime builds, in order: LocalStore, CacheStorage, NetworkCacheWorker,
SyncApi (over the worker's CachingTransport), connectivity probe and
monitor, and the SyncManager. Nothing is created at import time.

start()     opens storage, installs the worker, subscribes the sync manager
            to worker broadcasts, starts connectivity polling and the
            periodic sync timer
shutdown()  stops timers, waits for a running cycle, closes clients and
            storage
"""

from __future__ import annotations

import logging

import httpx

from .api import SyncApi
from .cache_storage import CacheStorage
from .cache_worker import CachingTransport, NetworkCacheWorker
from .connectivity import ConnectivityMonitor, ConnectivityProbe, HttpConnectivityProbe
from .settings import OfflineSettings
from .store import LocalStore
from .sync_manager import SyncManager

logger = logging.getLogger(__name__)


class OfflineRuntime:
    def __init__(
        self,
        settings: OfflineSettings,
        *,
        network: httpx.AsyncBaseTransport | None = None,
        probe: ConnectivityProbe | None = None,
        precache_urls: tuple[str, ...] | None = None,
    ):
        self.settings = settings
        self.store = LocalStore(settings.database_url)
        self.cache_storage = CacheStorage(settings.cache_url)

        worker_kwargs = {} if precache_urls is None else {"precache_urls": precache_urls}
        self.worker = NetworkCacheWorker(
            self.cache_storage,
            network=network,
            origin=settings.server_url,
            **worker_kwargs,
        )
        self.api = SyncApi(
            settings.server_url,
            token=lambda: self.settings.api_token,
            timeout=settings.request_timeout,
            transport=CachingTransport(self.worker),
        )
        self.probe = probe or HttpConnectivityProbe(
            f"{settings.server_url.rstrip('/')}/api/health",
            timeout=min(settings.request_timeout, 5.0),
        )
        self.monitor = ConnectivityMonitor(self.probe, interval=settings.connectivity_poll)
        self.sync_manager = SyncManager(self.store, self.api, probe=self.probe, settings=settings)
        self._client_id: int | None = None
        self.started = False

    @classmethod
    def from_config(cls, config=None, **kwargs) -> "OfflineRuntime":
        return cls(OfflineSettings.from_config(config), **kwargs)

    def open_storage(self) -> None:
        """Open the local databases only (enough for CLI inspection commands)."""
        self.store.init()
        self.cache_storage.init()

    def close_storage(self) -> None:
        self.store.close()
        self.cache_storage.close()

    async def start(self, *, periodic: bool = True, monitor: bool = True) -> None:
        if self.started:
            return
        self.open_storage()
        if not await self.worker.install():
            logger.warning("Cache worker not installed; requests go straight to the network")
        self._client_id = self.worker.clients.register(self.sync_manager.handle_message)
        if monitor:
            self.monitor.add_listener(self.worker.on_connectivity_change)
            self.monitor.start()
        if periodic:
            self.sync_manager.start_periodic_sync()
        self.started = True
        logger.info("Offline runtime started (server %s)", self.settings.server_url)

    async def shutdown(self) -> None:
        await self.sync_manager.stop_periodic_sync()
        await self.monitor.stop()
        await self.sync_manager.wait_for_sync()
        if self._client_id is not None:
            self.worker.clients.unregister(self._client_id)
            self._client_id = None
        await self.api.aclose()
        self.close_storage()
        self.started = False
        logger.info("Offline runtime stopped")

    async def __aenter__(self) -> "OfflineRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
