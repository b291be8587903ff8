"""Drains the pending-operation queue of a site against the server.

Drain strategy (oldest operation first):
1. **Transport failure**: stop early; this and every later operation stay
   queued for the next run.
2. **Server rejection**: the operation can never succeed, so remove it and
   report it under ``failed`` with the server's reason, then continue.
3. **Success**: remove the operation, invalidate the cache keys its handler
   reports, record it under ``succeeded``, continue.

A run never raises.  Its outcome is a :class:`SyncResult`, returned to the
caller and published to subscribers as a :class:`SyncEvent`.  Only one run
per site is in flight at a time; a concurrent caller joins it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from learnsync.constants import NS_SYNC_TIMES, SyncPhase
from learnsync.services.connectivity import ConnectivityMonitor
from learnsync.services.local_store import LocalStore, StorageError
from learnsync.services.pending_queue import PendingOperation, PendingOperationQueue
from learnsync.services.result_cache import ResultCache
from learnsync.services.site_manager import SiteContext
from learnsync.site_gateway.client import ServerError, TransportError

logger = logging.getLogger(__name__)

_LAST_SYNC_KEY = "last_sync"


@dataclass
class SyncFailure:
    """An operation dropped during a run, with the reason."""

    operation_id: str
    reason: str


@dataclass
class SyncResult:
    """Summary of one drain of a site's queue."""

    site_id: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[SyncFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    interrupted: bool = False
    synced_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SyncEvent:
    """Published after every run."""

    site_id: str
    result: SyncResult
    automatic: bool


class SyncHandler(Protocol):
    """Replays queued operations of one entity kind."""

    entity_kind: str

    async def replay(self, site: SiteContext, operation: PendingOperation) -> list[str]:
        """Send *operation* to the server.

        Returns:
            Cache keys to invalidate once the operation is confirmed.

        Raises:
            TransportError: The server could not be reached.
            ServerError: The server rejected this operation.
        """
        ...

    def describe(self, operation: PendingOperation) -> str:
        """Short human-readable label used in warnings."""
        ...


SyncListener = Callable[[SyncEvent], Awaitable[None] | None]


class SyncCoordinator:
    """Single-flight, per-site drain of the pending-operation queue.

    Args:
        queue: The pending-operation queue.
        cache: Result cache whose keys are invalidated after replays.
        store: Local store used to remember the last completed sync.
        handlers: One handler per entity kind.
        max_attempts: Drop an operation after this many transport failures
            (``0`` or ``None`` keeps it queued forever).
        min_interval: Seconds that must pass between automatic syncs.
    """

    def __init__(
        self,
        queue: PendingOperationQueue,
        cache: ResultCache,
        store: LocalStore,
        handlers: Iterable[SyncHandler] = (),
        max_attempts: int | None = None,
        min_interval: float = 300,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._store = store
        self._handlers: dict[str, SyncHandler] = {}
        self._max_attempts = max_attempts or None
        self._min_interval = min_interval
        self._running: dict[str, asyncio.Task[SyncResult]] = {}
        self._phases: dict[str, SyncPhase] = {}
        self._listeners: list[SyncListener] = []
        for handler in handlers:
            self.register(handler)

    # ------------------------------------------------------------------
    # Registration and observation
    # ------------------------------------------------------------------

    def register(self, handler: SyncHandler) -> None:
        self._handlers[handler.entity_kind] = handler

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Register *listener* for :class:`SyncEvent` and return an unsubscriber."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def phase(self, site_id: str) -> SyncPhase:
        return self._phases.get(site_id, SyncPhase.IDLE)

    def is_syncing(self, site_id: str) -> bool:
        task = self._running.get(site_id)
        return task is not None and not task.done()

    async def last_sync_at(self, site_id: str) -> datetime | None:
        try:
            stamp = await self._store.get(site_id, NS_SYNC_TIMES, _LAST_SYNC_KEY)
        except StorageError:
            logger.warning("Cannot read last sync time (site=%s)", site_id)
            return None
        return datetime.fromisoformat(stamp) if stamp else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync(self, site: SiteContext, automatic: bool = False) -> SyncResult:
        """Drain the queue of *site*, or join the drain already in flight."""
        task = self._running.get(site.id)
        if task is None or task.done():
            task = asyncio.create_task(self._run(site, automatic))
            self._running[site.id] = task
            task.add_done_callback(lambda t, site_id=site.id: self._forget_run(site_id, t))
        else:
            logger.debug("Joining sync already in flight (site=%s)", site.id)
        return await asyncio.shield(task)

    async def sync_if_needed(self, site: SiteContext, force: bool = False) -> SyncResult | None:
        """Sync *site* unless its last completed sync is recent enough."""
        if not force:
            last = await self.last_sync_at(site.id)
            if last is not None:
                elapsed = (datetime.now(UTC) - last).total_seconds()
                if elapsed < self._min_interval:
                    return None
        return await self.sync(site, automatic=True)

    async def sync_all(self, sites: Iterable[SiteContext], automatic: bool = True) -> list[SyncResult]:
        """Sync several sites concurrently; sites never wait on each other."""
        return list(await asyncio.gather(*(self.sync(site, automatic) for site in sites)))

    def attach(
        self,
        monitor: ConnectivityMonitor,
        sites: Callable[[], Iterable[SiteContext]],
    ) -> Callable[[], None]:
        """Sync every site returned by *sites* whenever *monitor* goes online."""

        async def _on_change(online: bool) -> None:
            if online:
                await self.sync_all(sites(), automatic=True)

        return monitor.subscribe(_on_change)

    async def run_periodic(
        self,
        sites: Callable[[], Iterable[SiteContext]],
        interval: float,
        monitor: ConnectivityMonitor | None = None,
    ) -> None:
        """Loop forever, syncing sites that need it every *interval* seconds."""
        while True:
            await asyncio.sleep(interval)
            if monitor is not None and not monitor.is_online:
                continue
            for site in list(sites()):
                await self.sync_if_needed(site)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def _forget_run(self, site_id: str, task: asyncio.Task) -> None:
        if self._running.get(site_id) is task:
            del self._running[site_id]

    async def _run(self, site: SiteContext, automatic: bool) -> SyncResult:
        self._phases[site.id] = SyncPhase.DRAINING
        try:
            result = await self._drain(site)
            self._phases[site.id] = SyncPhase.REPORTING
            if not result.interrupted:
                await self._remember_sync(site.id, result)
            logger.info(
                "Sync finished (site=%s): succeeded=%d, failed=%d, interrupted=%s",
                site.id,
                len(result.succeeded),
                len(result.failed),
                result.interrupted,
            )
            await self._publish(SyncEvent(site_id=site.id, result=result, automatic=automatic))
            return result
        finally:
            self._phases[site.id] = SyncPhase.IDLE

    async def _drain(self, site: SiteContext) -> SyncResult:
        result = SyncResult(site_id=site.id)
        try:
            operations = await self._queue.list(site.id)
        except StorageError as exc:
            result.warnings.append(exc.message)
            result.interrupted = True
            return result

        for operation in operations:
            handler = self._handlers.get(operation.entity_kind)
            if handler is None:
                logger.warning("No sync handler for %r, leaving queued", operation.entity_kind)
                result.warnings.append(f"Cannot sync pending {operation.entity_kind} changes")
                continue

            try:
                keep_going = await self._replay(site, handler, operation, result)
            except StorageError as exc:
                result.warnings.append(exc.message)
                result.interrupted = True
                break
            except Exception:
                logger.exception("Unexpected error replaying operation %s", operation.id)
                result.warnings.append(f"{handler.describe(operation)} could not be sent")
                result.interrupted = True
                break

            if not keep_going:
                result.interrupted = True
                break

        return result

    async def _replay(
        self,
        site: SiteContext,
        handler: SyncHandler,
        operation: PendingOperation,
        result: SyncResult,
    ) -> bool:
        """Replay one operation and classify the outcome.

        Returns:
            ``False`` when the drain must stop (transport failure).
        """
        try:
            keys = await handler.replay(site, operation)
        except TransportError as exc:
            attempts = await self._queue.increment_attempts(site.id, operation.id)
            if self._max_attempts and attempts >= self._max_attempts:
                await self._queue.remove(site.id, operation.id)
                reason = f"Gave up after {attempts} attempts: {exc.message}"
                result.failed.append(SyncFailure(operation_id=operation.id, reason=reason))
                result.warnings.append(f"{handler.describe(operation)} could not be sent: {reason}")
                logger.warning("Dropped operation %s after %d attempts", operation.id, attempts)
            else:
                logger.info("Sync interrupted at operation %s: %s", operation.id, exc.message)
            return False
        except ServerError as exc:
            await self._queue.remove(site.id, operation.id)
            result.failed.append(SyncFailure(operation_id=operation.id, reason=exc.message))
            result.warnings.append(f"{handler.describe(operation)} could not be sent: {exc.message}")
            logger.info("Operation %s rejected by server: %s", operation.id, exc.message)
            return True

        await self._queue.remove(site.id, operation.id)
        result.succeeded.append(operation.id)
        try:
            for key in keys:
                await self._cache.invalidate(site.id, key)
        except StorageError as exc:
            logger.warning("Operation %s sent but its cache keys could not be invalidated", operation.id)
            result.warnings.append(exc.message)
        return True

    async def _remember_sync(self, site_id: str, result: SyncResult) -> None:
        try:
            await self._store.set(site_id, NS_SYNC_TIMES, _LAST_SYNC_KEY, result.synced_at.isoformat())
        except StorageError as exc:
            result.warnings.append(exc.message)

    async def _publish(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Sync listener %r failed", listener)
