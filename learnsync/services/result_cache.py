"""Per-site cache of remote read results.

Entries are keyed by a :func:`make_cache_key` digest of the operation and
its parameters.  Invalidation only marks an entry stale; the value stays
around so an "emergency" read can serve it when the fresh fetch fails.

Concurrent reads of the same missing key share one remote call
(single-flight), and an entry is always replaced as a whole.

An invalidation issued while a fetch is in flight is never lost: the late
result is stored stale, and reads that start after the invalidation do not
join the older fetch.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from learnsync.constants import NS_WS_CACHE
from learnsync.services.local_store import LocalStore
from learnsync.site_gateway.client import TransportError

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
# (site epoch, key generation), bumped by invalidate_all and invalidate
Generation = tuple[int, int]


def make_cache_key(operation: str, params: Mapping[str, Any] | None = None) -> str:
    """Derive a stable cache key from an operation name and its parameters.

    Parameters are normalised (``None`` values dropped, keys sorted at every
    level) so equal requests always map to the same key across restarts.
    """
    normalized = {k: v for k, v in (params or {}).items() if v is not None}
    encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:32]
    return f"{operation}:{digest}"


@dataclass
class CacheEntry:
    """A cached read result for one (site, key)."""

    key: str
    site_id: str
    value: Any
    fetched_at: datetime
    stale: bool = False

    def to_record(self) -> dict:
        return {
            "value": self.value,
            "fetched_at": self.fetched_at.isoformat(),
            "stale": self.stale,
        }

    @classmethod
    def from_record(cls, site_id: str, key: str, record: dict) -> CacheEntry:
        return cls(
            key=key,
            site_id=site_id,
            value=record.get("value"),
            fetched_at=datetime.fromisoformat(record["fetched_at"]),
            stale=bool(record.get("stale", False)),
        )


class ResultCache:
    """Result cache over a :class:`LocalStore`.

    Args:
        store: Durable storage for the entries.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._inflight: dict[tuple[str, str], tuple[Generation, asyncio.Task]] = {}
        self._generations: dict[tuple[str, str], int] = {}
        self._epochs: dict[str, int] = {}

    def _generation(self, site_id: str, key: str) -> Generation:
        return self._epochs.get(site_id, 0), self._generations.get((site_id, key), 0)

    async def get_entry(self, site_id: str, key: str) -> CacheEntry | None:
        """Return the entry for *key* (live or stale), or ``None``."""
        record = await self._store.get(site_id, NS_WS_CACHE, key)
        if record is None:
            return None
        return CacheEntry.from_record(site_id, key, record)

    async def read(
        self,
        site_id: str,
        key: str,
        fetcher: Fetcher,
        *,
        ignore_cache: bool = False,
        emergency_cache: bool = True,
    ) -> Any:
        """Return the cached value for *key*, fetching it when needed.

        A live entry is returned without calling *fetcher* unless
        *ignore_cache* is set.  Otherwise *fetcher* is invoked (shared with any
        concurrent read of the same key) and its result stored.  If the fetch
        fails with a :class:`TransportError` and *emergency_cache* is set, the
        previous value is served instead, even when stale.

        Raises:
            TransportError: The fetch could not complete and no fallback applies.
            ServerError: The server rejected the read.
            StorageError: The local store is unavailable.
        """
        entry = await self.get_entry(site_id, key)
        if entry is not None and not entry.stale and not ignore_cache:
            logger.debug("Cache hit for %s (site=%s)", key, site_id)
            return entry.value

        logger.debug("Cache miss for %s (site=%s)", key, site_id)
        try:
            return await self._fetch_shared(site_id, key, fetcher)
        except TransportError:
            if emergency_cache and entry is not None:
                logger.warning("Serving emergency cache for %s (site=%s)", key, site_id)
                return entry.value
            raise

    async def put(self, site_id: str, key: str, value: Any) -> CacheEntry:
        """Store *value* as the live entry for *key*, replacing any previous one."""
        entry = CacheEntry(key=key, site_id=site_id, value=value, fetched_at=datetime.now(UTC))
        await self._store.set(site_id, NS_WS_CACHE, key, entry.to_record())
        return entry

    async def invalidate(self, site_id: str, key: str) -> None:
        """Mark the entry for *key* stale.  No-op if there is none."""
        flight = (site_id, key)
        self._generations[flight] = self._generations.get(flight, 0) + 1
        await self._store.update(site_id, NS_WS_CACHE, key, _mark_stale)

    async def invalidate_all(self, site_id: str) -> int:
        """Mark every entry of *site_id* stale.  Returns how many changed."""
        self._epochs[site_id] = self._epochs.get(site_id, 0) + 1
        for flight in [f for f in self._generations if f[0] == site_id]:
            del self._generations[flight]
        changed = await self._store.update_all(site_id, NS_WS_CACHE, _mark_stale)
        logger.info("Invalidated %d cache entries (site=%s)", changed, site_id)
        return changed

    async def _fetch_shared(self, site_id: str, key: str, fetcher: Fetcher) -> Any:
        flight = (site_id, key)
        generation = self._generation(site_id, key)
        running = self._inflight.get(flight)
        if running is None or running[1].done() or running[0] != generation:
            task = asyncio.create_task(self._fetch_and_store(site_id, key, fetcher, generation))
            self._inflight[flight] = (generation, task)
            task.add_done_callback(lambda t: self._forget_flight(flight, t))
        else:
            task = running[1]
        # shield: one caller being cancelled must not abort the shared fetch
        return await asyncio.shield(task)

    def _forget_flight(self, flight: tuple[str, str], task: asyncio.Task) -> None:
        running = self._inflight.get(flight)
        if running is not None and running[1] is task:
            del self._inflight[flight]

    async def _fetch_and_store(self, site_id: str, key: str, fetcher: Fetcher, generation: Generation) -> Any:
        value = await fetcher()

        def _record(_previous: dict | None) -> dict:
            stale = self._generation(site_id, key) != generation
            if stale:
                logger.debug("Invalidated during fetch, storing %s stale (site=%s)", key, site_id)
            entry = CacheEntry(key=key, site_id=site_id, value=value, fetched_at=datetime.now(UTC), stale=stale)
            return entry.to_record()

        await self._store.update(site_id, NS_WS_CACHE, key, _record)
        return value


def _mark_stale(record: dict | None) -> dict | None:
    if record is None or record.get("stale"):
        return None
    return {**record, "stale": True}
