"""Device-local durable storage, partitioned by site and namespace.

Backs the result cache, the pending-operation queue and the sync
bookkeeping.  Values are JSON documents stored in the ``local_records``
table.  Every database failure is re-raised as :class:`StorageError` so
callers can tell "cannot even record the attempt" apart from a cache miss
or a connectivity problem.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from learnsync.models import LocalRecord

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the local store cannot be read or written.

    Attributes:
        site_id: Site whose data was being accessed.
        namespace: Namespace being accessed.
    """

    def __init__(
        self,
        message: str,
        site_id: str | None = None,
        namespace: str | None = None,
    ) -> None:
        self.message = message
        self.site_id = site_id
        self.namespace = namespace
        super().__init__(message)


class LocalStore:
    """Async key/value store over SQLAlchemy.

    Writes for one site are serialised by a per-site lock, so replacing a
    value is atomic per key and two writers never race on the same row.
    Different sites never share a lock.

    Args:
        session_factory: Factory for the sessions used by each operation.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, site_id: str) -> asyncio.Lock:
        """Return the write lock of *site_id*."""
        return self._locks.setdefault(site_id, asyncio.Lock())

    @asynccontextmanager
    async def _session(self, site_id: str, namespace: str | None) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Local store failure (site=%s, namespace=%s): %s", site_id, namespace, exc)
            raise StorageError(
                f"Local storage unavailable: {exc}",
                site_id=site_id,
                namespace=namespace,
            ) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, site_id: str, namespace: str, key: str) -> Any | None:
        """Return the stored value, or ``None`` if absent."""
        async with self._session(site_id, namespace) as session:
            record = await session.scalar(
                select(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                    LocalRecord.key == key,
                )
            )
            return record.value if record is not None else None

    async def list(self, site_id: str, namespace: str) -> list[tuple[str, Any]]:
        """Return ``(key, value)`` pairs of a namespace in insertion order."""
        async with self._session(site_id, namespace) as session:
            result = await session.execute(
                select(LocalRecord.key, LocalRecord.value)
                .where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                )
                .order_by(LocalRecord.id)
            )
            return [(row.key, row.value) for row in result]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, site_id: str, namespace: str, key: str, value: Any) -> None:
        """Insert or replace the value stored under *key*.

        A replaced value keeps its original insertion position.
        """
        async with self.lock(site_id), self._session(site_id, namespace) as session:
            record = await session.scalar(
                select(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                    LocalRecord.key == key,
                )
            )
            if record is None:
                session.add(LocalRecord(site_id=site_id, namespace=namespace, key=key, value=value))
            else:
                record.value = value
            await session.commit()

    async def update(
        self,
        site_id: str,
        namespace: str,
        key: str,
        mutate: Callable[[Any | None], Any | None],
    ) -> Any | None:
        """Read-modify-write one value while holding the site lock.

        *mutate* receives the current value (``None`` if absent) and returns
        the new value, or ``None`` to leave the stored value untouched.  It
        must return a new object rather than change its argument in place.

        Returns:
            The stored value after the call.
        """
        async with self.lock(site_id), self._session(site_id, namespace) as session:
            record = await session.scalar(
                select(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                    LocalRecord.key == key,
                )
            )
            current = record.value if record is not None else None
            value = mutate(current)
            if value is None:
                return current
            if record is None:
                session.add(LocalRecord(site_id=site_id, namespace=namespace, key=key, value=value))
            else:
                record.value = value
            await session.commit()
            return value

    async def update_all(
        self,
        site_id: str,
        namespace: str,
        mutate: Callable[[Any], Any | None],
    ) -> int:
        """Apply *mutate* to every value of a namespace under the site lock.

        Values for which *mutate* returns ``None`` are left untouched.
        Returns the number of values replaced.
        """
        async with self.lock(site_id), self._session(site_id, namespace) as session:
            records = await session.scalars(
                select(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                )
            )
            changed = 0
            for record in records:
                value = mutate(record.value)
                if value is not None:
                    record.value = value
                    changed += 1
            await session.commit()
            return changed

    async def delete(self, site_id: str, namespace: str, key: str) -> bool:
        """Delete one value.  Returns ``False`` if nothing was stored."""
        async with self.lock(site_id), self._session(site_id, namespace) as session:
            result = await session.execute(
                delete(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                    LocalRecord.key == key,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def clear(self, site_id: str, namespace: str) -> int:
        """Delete every value of a namespace.  Returns the number removed."""
        async with self.lock(site_id), self._session(site_id, namespace) as session:
            result = await session.execute(
                delete(LocalRecord).where(
                    LocalRecord.site_id == site_id,
                    LocalRecord.namespace == namespace,
                )
            )
            await session.commit()
            return result.rowcount
