"""
Offline client: local SQLite store, mutation queue, sync manager and the
caching HTTP layer that keeps the register usable without a network.
"""

from .errors import FatalSyncError, InsufficientStockError, TransientNetworkError
from .store import LocalStore
from .sync_manager import SyncManager, SyncPhase, SyncResult
from .cache_worker import NetworkCacheWorker, CachingTransport
from .runtime import OfflineRuntime
from .settings import OfflineSettings

__all__ = [
    "FatalSyncError", "InsufficientStockError", "TransientNetworkError",
    "LocalStore",
    "SyncManager", "SyncPhase", "SyncResult",
    "NetworkCacheWorker", "CachingTransport",
    "OfflineRuntime", "OfflineSettings",
]
