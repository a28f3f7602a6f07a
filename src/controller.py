"""
Operator Controller - work queue and reconcile scheduling.

Turns store events and a periodic resync into reconcile requests,
deduplicates them per key, runs the reconciler on a bounded number of
workers and requeues failures with exponential backoff. The reconciler
itself never retries; all retry policy lives here.
"""

import asyncio
import logging
import random
import time
from typing import Dict, List, Optional, Set

from config import ControllerConfig
from events import EventBus, ObjectEvent
from models import Deployment, GuestBook, ObjectKey, ObjectMeta
from reconciler import GuestBookReconciler, ReconcileResult
from store import StateStore, StoreError

logger = logging.getLogger(__name__)


class Controller:
    """
    Drives a reconciler from a deduplicating work queue.

    A key is never reconciled by two workers at once: a key enqueued
    while it is being processed is marked dirty and re-queued when the
    current run finishes.
    """

    def __init__(
        self,
        store: StateStore,
        reconciler: Optional[GuestBookReconciler] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.reconciler = reconciler or GuestBookReconciler(store)
        self.config = config or ControllerConfig()
        self.running = False
        self._event_bus = event_bus

        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._failures: Dict[ObjectKey, int] = {}
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}

        self._tasks: List[asyncio.Task] = []
        self._subscriber_id: Optional[str] = None

    # ==================== Queue ====================

    @property
    def queue_length(self) -> int:
        return self._queue.qsize()

    def failures(self, key: ObjectKey) -> int:
        """Number of consecutive failed reconciles for a key."""
        return self._failures.get(key, 0)

    def enqueue(self, key: ObjectKey) -> None:
        """Add a key to the queue unless it is already waiting."""
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def enqueue_after(self, key: ObjectKey, delay: float) -> None:
        """
        Add a key to the queue after a delay.

        If a timer for the key is already pending, the earlier of the two
        wins.
        """
        if delay <= 0:
            self.enqueue(key)
            return

        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()

        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def backoff_delay(self, failures: int) -> float:
        """
        Delay before retrying a key that has failed ``failures`` times.

        Exponential in the failure count, capped at backoff_max_delay, with
        ±backoff_jitter_factor jitter to prevent thundering herd.
        """
        delay = min(
            self.config.backoff_base_delay * 2 ** min(failures - 1, 10),
            self.config.backoff_max_delay,
        )
        jitter = (random.random() * 2 - 1) * self.config.backoff_jitter_factor
        return delay * (1 + jitter)

    # ==================== Processing ====================

    async def process_next_key(self) -> ReconcileResult:
        """Take one key off the queue and reconcile it."""
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        try:
            return await self._reconcile_key(key)
        finally:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.put_nowait(key)
            self._queue.task_done()

    async def _reconcile_key(self, key: ObjectKey) -> ReconcileResult:
        start_time = time.monotonic()
        try:
            result = await self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            result = ReconcileResult.failed(e, f"Reconciliation error: {e}")
        duration = time.monotonic() - start_time

        if result.success:
            self._failures.pop(key, None)
            logger.info(f"Reconciled {key} in {duration:.3f}s: {result.message}")
            if result.requeue_after:
                self.enqueue_after(key, result.requeue_after)
            return result

        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_delay(failures)
        logger.warning(
            f"Failed to reconcile {key} (attempt {failures}): {result.message}; "
            f"requeue in {delay:.1f}s"
        )
        self.enqueue_after(key, delay)
        return result

    async def _worker(self) -> None:
        while self.running:
            await self.process_next_key()

    # ==================== Triggers ====================

    @staticmethod
    def key_for_event(event: ObjectEvent) -> Optional[ObjectKey]:
        """
        Map a store event to the GuestBook key it concerns.

        GuestBook events map to their own key; Deployment events map to
        their controlling GuestBook. Anything else is ignored.
        """
        if event.kind == GuestBook.KIND:
            return event.key
        if event.kind == Deployment.KIND:
            metadata = ObjectMeta.from_dict(event.object_data["metadata"])
            owner = metadata.controller_owner()
            if owner is not None and owner.kind == GuestBook.KIND:
                return ObjectKey(namespace=event.namespace, name=owner.name)
        return None

    async def _watch_loop(self) -> None:
        """Enqueue a key for every relevant store event."""
        self._subscriber_id, subscription = await self._event_bus.subscribe()
        async for event in subscription:
            key = self.key_for_event(event)
            if key is not None:
                logger.debug(f"{event.event_type.value} {event.kind} -> enqueue {key}")
                self.enqueue(key)

    async def resync(self) -> int:
        """Enqueue every GuestBook in the store. Returns how many."""
        guestbooks = await self.store.list(GuestBook)
        for guestbook in guestbooks:
            self.enqueue(guestbook.key)
        return len(guestbooks)

    async def _resync_loop(self) -> None:
        while self.running:
            try:
                count = await self.resync()
                logger.info(f"Resync queued {count} GuestBook(s)")
            except StoreError as e:
                logger.error(f"Resync failed: {e}")
            await asyncio.sleep(self.config.resync_interval)

    def trigger_reconciliation(self, key: ObjectKey) -> None:
        """Manually trigger reconciliation for a GuestBook."""
        logger.info(f"Manually triggering reconciliation for {key}")
        self.enqueue(key)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the watch, resync and worker tasks and wait on them."""
        logger.info(
            f"Starting controller with {self.config.max_concurrent_reconciles} workers"
        )
        self.running = True

        if self._event_bus is not None:
            self._tasks.append(asyncio.create_task(self._watch_loop()))
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        for _ in range(self.config.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")

    async def stop(self) -> None:
        """Stop all tasks and pending requeue timers."""
        logger.info("Stopping controller")
        self.running = False

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
