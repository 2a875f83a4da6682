# Overview: Orchestrates upload and download sync cycles between the local store and the server.

"""
SyncManager

One cycle at a time: IDLE -> UPLOADING -> DOWNLOADING -> IDLE, or through
ERROR when a phase fails. A trigger that arrives while a cycle runs gets
"Sync already in progress" back instead of being queued.

Upload: due queue entries are coalesced per entity (LocalStore.pending_changes)
and sent in a single POST. Every item's outcome is applied on its own:
processed items are acknowledged, conflicts are parked for manual
resolution, errors are retried with backoff until they are dead-lettered.

Download: server changes since the checkpoint are merged item by item. The
checkpoint only moves when every item merged.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError
from .api import SyncApi
from .connectivity import ConnectivityProbe, StaticConnectivityProbe
from .errors import FatalSyncError, TransientNetworkError
from .settings import OfflineSettings
from .store import LocalStore, PendingChange

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync already in progress"
NO_CONNECTION = "No internet connection"

# Wire bucket for each queued entity type, in upload order
UPLOAD_BUCKETS = {
    "product": "products",
    "cash_session": "cashSessions",
    "sale": "sales",
}

SYNC_MESSAGES = ("BACKGROUND_SYNC", "PERIODIC_SYNC")


class SyncPhase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    ERROR = "error"


@dataclass
class SyncResult:
    success: bool
    error: str | None = None
    results: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "error": self.error, "results": self.results}


PhaseListener = Callable[[SyncPhase], "None | Awaitable[None]"]


class SyncManager:
    def __init__(
        self,
        store: LocalStore,
        api: SyncApi,
        *,
        probe: ConnectivityProbe | None = None,
        settings: OfflineSettings | None = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.api = api
        self.probe = probe or StaticConnectivityProbe(True)
        self.settings = settings or OfflineSettings()
        self.clock = clock

        self.phase = SyncPhase.IDLE
        self.last_error: str | None = None
        self.last_success_at: str | None = None
        self._lock = asyncio.Lock()
        self._periodic_task: asyncio.Task | None = None
        self._listeners: list[PhaseListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def add_phase_listener(self, listener: PhaseListener) -> None:
        self._listeners.append(listener)

    async def _set_phase(self, phase: SyncPhase) -> None:
        self.phase = phase
        for listener in list(self._listeners):
            result = listener(phase)
            if inspect.isawaitable(result):
                await result

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def get_sync_status(self) -> dict:
        return {
            "phase": self.phase.value,
            "isSyncing": self.is_syncing,
            "hasPeriodicSync": self._periodic_task is not None and not self._periodic_task.done(),
            "lastSyncTimestamp": self.store.get_checkpoint(),
            "lastSuccessAt": self.last_success_at,
            "lastError": self.last_error,
            "queue": self.store.queue_stats(self.clock()),
        }

    async def wait_for_sync(self) -> None:
        async with self._lock:
            pass

    # ------------------------------------------------------------------
    # Cycle guard
    # ------------------------------------------------------------------

    async def _run_cycle(self, body: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        if self._lock.locked():
            return SyncResult(False, error=SYNC_IN_PROGRESS)
        await self._lock.acquire()
        try:
            if not await self.probe.is_online():
                return SyncResult(False, error=NO_CONNECTION)
            try:
                result = await body()
            except FatalSyncError as exc:
                logger.error("Sync aborted: %s", exc)
                self.store.log_sync("sync", "error", f"Aborted: {exc}")
                result = SyncResult(False, error=str(exc))
            except Exception as exc:
                logger.exception("Sync cycle failed")
                self.store.log_sync("sync", "error", f"Unexpected error: {exc}")
                result = SyncResult(False, error=str(exc) or exc.__class__.__name__)

            if result.success:
                self.last_error = None
                self.last_success_at = to_utc_z(self.clock())
            else:
                self.last_error = result.error
                await self._set_phase(SyncPhase.ERROR)
            await self._set_phase(SyncPhase.IDLE)
            return result
        finally:
            self._lock.release()

    async def upload_changes(self) -> SyncResult:
        return await self._run_cycle(self._upload)

    async def download_changes(self) -> SyncResult:
        return await self._run_cycle(self._download)

    async def full_sync(self) -> SyncResult:
        """Upload, then download. Succeeds only when both phases succeed."""
        return await self._run_cycle(self._full)

    async def _full(self) -> SyncResult:
        upload = await self._upload()
        download = await self._download()
        errors = [r.error for r in (upload, download) if r.error]
        return SyncResult(
            upload.success and download.success,
            error="; ".join(errors) or None,
            results={"upload": upload.to_dict(), "download": download.to_dict()},
        )

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _fail_entries(self, changes: list[PendingChange], error: str) -> int:
        return sum(
            self.store.mark_failed(
                change.entry_ids,
                error,
                max_retries=self.settings.max_retries,
                backoff_base=self.settings.backoff_base,
                backoff_max=self.settings.backoff_max,
                now=self.clock(),
            )
            for change in changes
        )

    async def _upload(self) -> SyncResult:
        await self._set_phase(SyncPhase.UPLOADING)
        changes = self.store.pending_changes(self.clock())
        summary = {bucket: {"processed": 0, "conflicts": 0, "errors": 0} for bucket in UPLOAD_BUCKETS.values()}
        summary["deadLettered"] = 0
        if not changes:
            return SyncResult(True, results=summary)

        payload: dict = {bucket: [] for bucket in UPLOAD_BUCKETS.values()}
        for change in changes:
            payload[UPLOAD_BUCKETS[change.entity_type]].append(change.payload)
        payload["lastSyncTimestamp"] = self.store.get_checkpoint()

        try:
            response = await self.api.upload(payload)
        except TransientNetworkError as exc:
            summary["deadLettered"] = self._fail_entries(changes, str(exc))
            self.store.log_sync("upload", "error", str(exc))
            logger.warning("Upload of %d changes failed: %s", len(changes), exc)
            return SyncResult(False, error=str(exc), results=summary)

        results = response.get("results") or {}
        for change in changes:
            bucket = UPLOAD_BUCKETS[change.entity_type]
            counters = summary[bucket]
            outcome, conflict = _find_outcome(results.get(bucket) or {}, change.entity_id)

            if outcome is not None and outcome.get("status") == "processed":
                self.store.acknowledge(change.entity_type, change.entity_id, change.entry_ids, outcome.get("serverId"))
                counters["processed"] += 1
            elif outcome is not None and outcome.get("status") == "conflict":
                conflict = conflict or {"reason": outcome.get("error"), "serverId": outcome.get("serverId")}
                conflict.setdefault("clientData", change.payload)
                self.store.mark_conflict(change.entry_ids, conflict)
                self.store.log_sync("upload", "conflict", conflict.get("reason"),
                                    entity_type=change.entity_type, entity_id=change.entity_id)
                counters["conflicts"] += 1
            else:
                error = (outcome or {}).get("error") or "No result returned for item"
                summary["deadLettered"] += self._fail_entries([change], error)
                self.store.log_sync("upload", "error", error,
                                    entity_type=change.entity_type, entity_id=change.entity_id)
                counters["errors"] += 1

        processed = sum(summary[b]["processed"] for b in UPLOAD_BUCKETS.values())
        conflicts = sum(summary[b]["conflicts"] for b in UPLOAD_BUCKETS.values())
        errors = sum(summary[b]["errors"] for b in UPLOAD_BUCKETS.values())
        self.store.log_sync(
            "upload", "success" if errors == 0 else "error",
            f"Uploaded {summary['products']['processed']} products, "
            f"{summary['cashSessions']['processed']} cash sessions, "
            f"{summary['sales']['processed']} sales ({conflicts} conflicts, {errors} errors)",
        )
        logger.info("Upload finished: %d processed, %d conflicts, %d errors", processed, conflicts, errors)

        # Conflicts wait for manual resolution; they do not fail the phase
        return SyncResult(
            errors == 0,
            error=f"{errors} items failed to upload" if errors else None,
            results=summary,
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def _download(self) -> SyncResult:
        await self._set_phase(SyncPhase.DOWNLOADING)
        checkpoint = self.store.get_checkpoint()
        try:
            response = await self.api.download(
                last_sync=checkpoint,
                include_products=True,
                include_sales=True,
                own_sales_only=self.settings.own_sales_only,
            )
        except TransientNetworkError as exc:
            self.store.log_sync("download", "error", str(exc))
            logger.warning("Download failed: %s", exc)
            return SyncResult(False, error=str(exc))

        data = response.get("data") or {}
        counts = {
            "products": {"inserted": 0, "updated": 0, "skipped": 0, "conflict": 0},
            "sales": {"inserted": 0, "skipped": 0},
        }
        failures: list[str] = []

        for key, merge in (("products", self.store.merge_server_product), ("sales", self.store.merge_server_sale)):
            for item in data.get(key) or []:
                try:
                    outcome = merge(item)
                except (ValidationError, SQLAlchemyError, TypeError, KeyError) as exc:
                    ref = item.get("id") if isinstance(item, dict) else None
                    failures.append(f"{key} {ref}: {exc}")
                    logger.warning("Could not merge downloaded %s %s: %s", key, ref, exc)
                    continue
                counts[key][outcome] = counts[key].get(outcome, 0) + 1

        results = {**counts, "statistics": response.get("statistics") or {}}
        new_checkpoint = data.get("syncTimestamp")
        if failures or not new_checkpoint:
            error = (
                f"{len(failures)} downloaded items could not be merged" if failures
                else "Server did not return a syncTimestamp"
            )
            self.store.log_sync("download", "error", f"{error}: {'; '.join(failures[:5])}" if failures else error)
            results["failures"] = failures
            return SyncResult(False, error=error, results=results)

        self.store.set_checkpoint(new_checkpoint)
        self.store.log_sync(
            "download", "success",
            f"Downloaded {len(data.get('products') or [])} products, {len(data.get('sales') or [])} sales",
        )
        return SyncResult(True, results=results)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def handle_message(self, message) -> SyncResult | None:
        """Client-side handler for cache worker broadcasts."""
        kind = message.get("type") if isinstance(message, dict) else message
        if kind in SYNC_MESSAGES:
            logger.info("Sync triggered by %s", kind)
            return await self.full_sync()
        return None

    async def _periodic(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.is_syncing:
                continue
            try:
                # Stopping the timer must not cut a running cycle short
                result = await asyncio.shield(self.full_sync())
            except Exception:
                logger.exception("Periodic sync failed")
                continue
            if not result.success and result.error not in (NO_CONNECTION, SYNC_IN_PROGRESS):
                logger.warning("Periodic sync finished with errors: %s", result.error)

    def start_periodic_sync(self, interval: float | None = None) -> None:
        """(Re)start the periodic timer. Must be called from a running event loop."""
        self._cancel_periodic()
        seconds = interval if interval is not None else self.settings.sync_interval
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic(seconds))

    def _cancel_periodic(self) -> asyncio.Task | None:
        task, self._periodic_task = self._periodic_task, None
        if task is not None:
            task.cancel()
        return task

    async def stop_periodic_sync(self) -> None:
        task = self._cancel_periodic()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Manual queue maintenance
    # ------------------------------------------------------------------

    def list_conflicts(self) -> list[dict]:
        return self.store.list_conflicts()

    def resolve_conflict(self, entity_type: str, entity_id: str, keep: str = "local") -> dict:
        return self.store.resolve_conflict(entity_type, entity_id, keep)

    def retry_dead_letters(self, entity_type: str | None = None) -> int:
        count = self.store.retry_dead(entity_type)
        if count:
            self.store.log_sync("retry", "success", f"Re-queued {count} dead-lettered entries", entity_type=entity_type)
        return count


def _find_outcome(bucket: dict, local_id: str) -> tuple[dict | None, dict | None]:
    outcome = next((i for i in bucket.get("items") or [] if i.get("localId") == local_id), None)
    conflict = next((c for c in bucket.get("conflicts") or [] if c.get("localId") == local_id), None)
    return outcome, dict(conflict) if conflict else None
