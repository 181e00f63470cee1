"""Durable outbound sync queue.

Items are queued in FIFO order, persisted after every mutation and flushed to
the remote endpoint in fixed-size batches. A batch that fails is retried with
exponential backoff; if every attempt fails its items stay queued for the next
cycle. Items leave the queue only once a batch containing them is
acknowledged.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from src.connectivity import ConnectivityMonitor
from src.errors import StorageError, wrap_error
from src.local_store import SYNC_QUEUE_KEY, LocalStore
from src.models import SyncQueueItem, SyncResult, SyncStatus
from src.scheduler import Scheduler
from src.sync_transport import SyncTransport

logger = logging.getLogger(__name__)

PERIODIC_SYNC_TIMER = "periodic_sync"
OFFLINE_ERROR = "Device is offline"


@dataclass
class QueueStatistics:
    total_items: int = 0
    items_by_type: dict[str, int] = field(default_factory=dict)
    oldest_item: datetime | None = None
    newest_item: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "total_items": self.total_items,
            "items_by_type": dict(self.items_by_type),
            "oldest_item": self.oldest_item.isoformat() if self.oldest_item else None,
            "newest_item": self.newest_item.isoformat() if self.newest_item else None,
        }


class DataSynchronizer:
    """Owner of the sync queue."""

    component = "DataSynchronizer"

    def __init__(
        self,
        store: LocalStore,
        transport: SyncTransport,
        scheduler: Scheduler,
        connectivity: ConnectivityMonitor | None = None,
        max_queue_size: int = 1000,
        batch_size: int = 50,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sync_interval_minutes: float = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize synchronizer.

        Args:
            store: Durable storage for the queue and sync history
            transport: Delivery channel to the remote endpoint
            scheduler: Scheduler owning the periodic sync timer
            connectivity: Online/offline source (defaults to always-online)
            max_queue_size: Queue ceiling; the oldest items are evicted beyond it
            batch_size: Items per submitted batch
            retry_attempts: Retries per batch after the first attempt
            retry_delay: Base delay in seconds for exponential backoff
            sync_interval_minutes: Default periodic sync interval
            sleep: Awaitable sleep, replaced in tests
        """
        if batch_size < 1:
            raise ValueError(f"Batch size must be positive, got {batch_size}")
        self.store = store
        self.transport = transport
        self.scheduler = scheduler
        self.connectivity = connectivity or ConnectivityMonitor(scheduler)
        self.max_queue_size = max_queue_size
        self.batch_size = batch_size
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.sync_interval_minutes = sync_interval_minutes
        self._sleep = sleep

        self._queue: list[SyncQueueItem] = []
        self._lock = asyncio.Lock()
        self._is_syncing = False
        self._offline_mode = False
        self._last_sync_time: datetime | None = None
        self._background_sync: asyncio.Task | None = None
        self._sync_requested = False
        self._remove_listener = self.connectivity.add_listener(self._on_connectivity_change)

    # ============== STATE ==============

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online and not self._offline_mode

    @property
    def offline_mode(self) -> bool:
        return self._offline_mode

    async def set_offline_mode(self, enabled: bool) -> None:
        """Suspend remote delivery regardless of connectivity."""
        was_online = self.is_online
        self._offline_mode = enabled
        logger.info(f"Offline mode {'enabled' if enabled else 'disabled'}")
        if not was_online and self.is_online and self._queue:
            await self.sync_now()

    async def set_online(self, online: bool) -> None:
        """Report a connectivity change from the host platform."""
        await self.connectivity.set_online(online)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online and not self._offline_mode:
            logger.info("Network connection restored, triggering sync")
            await self.sync_now()

    # ============== QUEUE ==============

    async def load(self) -> int:
        """Restore the queue from durable storage.

        Returns:
            Number of items loaded
        """
        stored = await self.store.get_json(SYNC_QUEUE_KEY) or []
        items: list[SyncQueueItem] = []
        for entry in stored:
            try:
                items.append(SyncQueueItem.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable queue entry: {e}")
        self._queue = items[-self.max_queue_size :] if self.max_queue_size > 0 else []
        logger.info(f"Loaded {len(self._queue)} items from storage")
        return len(self._queue)

    async def _save_queue(self) -> None:
        await self.store.set_json(SYNC_QUEUE_KEY, [item.to_dict() for item in self._queue])

    async def add_to_queue(self, item: SyncQueueItem) -> SyncQueueItem:
        """Append an item, persist the queue and sync if online.

        Args:
            item: Item to queue; id and timestamp are stamped if absent

        Returns:
            The queued (stamped) item

        Raises:
            StorageError: If the queue could not be persisted
        """
        stamped = dataclasses.replace(
            item,
            id=item.id or f"sync_{uuid4().hex}",
            timestamp=item.timestamp or datetime.now(),
        )
        self._queue.append(stamped)

        overflow = len(self._queue) - self.max_queue_size
        if overflow > 0:
            del self._queue[:overflow]
            logger.warning(f"Queue size limit reached, removed {overflow} oldest item(s)")

        await self._save_queue()
        logger.debug(f"Added item to sync queue: {stamped.type}")

        if self.is_online:
            self.request_sync()
        return stamped

    def request_sync(self) -> None:
        """Start a background sync, or mark one as wanted if a sync is running."""
        self._sync_requested = True
        if self._background_sync is not None and not self._background_sync.done():
            return
        self._background_sync = asyncio.get_running_loop().create_task(
            self._run_background_sync(), name="sync-now"
        )

    async def _run_background_sync(self) -> None:
        while self._sync_requested:
            self._sync_requested = False
            if not self.is_online or not self._queue:
                return
            result = await self.sync_now()
            if not result.success:
                # Failed items wait for the next timer tick or reconnect
                return

    async def wait_for_pending_sync(self, timeout: float | None = None) -> None:
        """Wait for a sync started by ``add_to_queue`` to finish."""
        task = self._background_sync
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)

    async def clear_queue(self) -> None:
        self._queue = []
        await self._save_queue()
        logger.info("Sync queue cleared")

    def get_queue_size(self) -> int:
        return len(self._queue)

    def get_queue(self) -> list[SyncQueueItem]:
        """Snapshot of the queue, oldest first."""
        return list(self._queue)

    def get_queue_statistics(self) -> QueueStatistics:
        stats = QueueStatistics(total_items=len(self._queue))
        for item in self._queue:
            stats.items_by_type[item.type] = stats.items_by_type.get(item.type, 0) + 1
        timestamps = sorted(item.timestamp for item in self._queue if item.timestamp)
        if timestamps:
            stats.oldest_item = timestamps[0]
            stats.newest_item = timestamps[-1]
        return stats

    # ============== SYNC ==============

    async def sync_now(self) -> SyncResult:
        """Flush the whole queue.

        Returns:
            Success with zero counts for an empty queue; a failed result with
            ``error="Device is offline"`` when offline
        """
        return await self._sync(None)

    async def sync_item_type(self, item_type: str) -> SyncResult:
        """Flush only the queued items of one type."""
        return await self._sync(item_type)

    async def _sync(self, item_type: str | None) -> SyncResult:
        if not self.is_online:
            return SyncResult(success=False, error=OFFLINE_ERROR)

        async with self._lock:
            items = [i for i in self._queue if item_type is None or i.type == item_type]
            if not items:
                return SyncResult(success=True)

            logger.info(f"Starting sync of {len(items)} items...")
            self._is_syncing = True
            synced: list[SyncQueueItem] = []
            failed_count = 0
            try:
                for start in range(0, len(items), self.batch_size):
                    batch = items[start : start + self.batch_size]
                    if await self._submit_batch(batch):
                        synced.extend(batch)
                    else:
                        failed_count += len(batch)

                synced_ids = {item.id for item in synced}
                self._queue = [item for item in self._queue if item.id not in synced_ids]
                self._last_sync_time = datetime.now()
            finally:
                self._is_syncing = False
                try:
                    await self._save_queue()
                except StorageError as e:
                    logger.error(f"Failed to persist sync queue: {e}")

        if synced:
            try:
                await self.store.record_synced(synced)
            except StorageError as e:
                logger.warning(f"Failed to record sync history: {e}")

        logger.info(f"Sync completed: {len(synced)} synced, {failed_count} failed")
        return SyncResult(
            success=failed_count == 0,
            synced_count=len(synced),
            failed_count=failed_count,
            error=f"{failed_count} items failed to sync" if failed_count else None,
        )

    async def _submit_batch(self, batch: list[SyncQueueItem]) -> bool:
        items = [item.to_dict() for item in batch]

        for attempt in range(self.retry_attempts + 1):
            if attempt > 0:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(f"Retry attempt {attempt}/{self.retry_attempts} in {delay:.1f}s")
                await self._sleep(delay)

            payload = {
                "items": items,
                "batchId": f"batch_{uuid4().hex[:16]}",
                "timestamp": datetime.now().isoformat(),
            }
            if attempt > 0:
                payload["retryAttempt"] = attempt

            try:
                response = await self.transport.send_batch(payload)
            except Exception as e:
                # Any transport failure counts as a failed attempt
                error = wrap_error(e, self.component, "sync_batch", {"batch_size": len(batch), "attempt": attempt})
                logger.error(f"Batch sync error: {error}")
                continue

            if response.success:
                if attempt > 0:
                    logger.info(f"Retry successful on attempt {attempt}")
                return True
            logger.error(f"Batch rejected: {response.error}")

        logger.error(f"All retry attempts failed for batch of {len(batch)} items")
        return False

    # ============== PERIODIC ==============

    def start_periodic_sync(self, interval_minutes: float | None = None) -> None:
        """Start (or replace) the periodic sync timer."""
        if interval_minutes is not None:
            self.sync_interval_minutes = interval_minutes
        self.scheduler.schedule_periodic(
            PERIODIC_SYNC_TIMER,
            self.sync_interval_minutes * 60,
            self._periodic_tick,
        )
        logger.info(f"Started periodic sync every {self.sync_interval_minutes} minutes")

    def stop_periodic_sync(self) -> None:
        """Stop the periodic sync timer. Safe to call when idle."""
        if self.scheduler.cancel(PERIODIC_SYNC_TIMER):
            logger.info("Stopped periodic sync")

    def update_sync_interval(self, interval_minutes: float) -> None:
        self.start_periodic_sync(interval_minutes)

    async def _periodic_tick(self) -> None:
        if self.is_online and self._queue:
            await self.sync_now()

    def get_last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            queue_size=len(self._queue),
            last_sync_time=self._last_sync_time,
            is_periodic_sync_active=self.scheduler.is_scheduled(PERIODIC_SYNC_TIMER),
            sync_interval_minutes=self.sync_interval_minutes,
            is_syncing=self._is_syncing,
        )

    async def cleanup(self, timeout: float = 10.0) -> None:
        """Stop timers, let a running sync finish and persist the queue."""
        logger.info("Cleaning up synchronizer...")
        self.stop_periodic_sync()
        self.connectivity.stop()

        task = self._background_sync
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)
            if not task.done():
                # Unacknowledged items stay queued
                task.cancel()
                await asyncio.wait({task})
        self._background_sync = None

        await self._save_queue()
        logger.info("Synchronizer cleanup complete")
