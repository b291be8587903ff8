"""Durable per-site queue of writes that could not reach the server."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from learnsync.constants import NS_PENDING
from learnsync.services.local_store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class PendingOperation:
    """A queued write waiting to be replayed against the server."""

    id: str
    site_id: str
    entity_kind: str
    payload: dict
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0

    def to_record(self) -> dict:
        return {
            "entity_kind": self.entity_kind,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_record(cls, site_id: str, op_id: str, record: dict) -> PendingOperation:
        return cls(
            id=op_id,
            site_id=site_id,
            entity_kind=record["entity_kind"],
            payload=record.get("payload") or {},
            created_at=datetime.fromisoformat(record["created_at"]),
            attempts=int(record.get("attempts", 0)),
        )


class PendingOperationQueue:
    """FIFO queue of :class:`PendingOperation` over a :class:`LocalStore`.

    The queue never drops entries on its own; removal is always an explicit
    :meth:`remove` after a confirmed replay (or a caller's give-up policy).
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    async def enqueue(self, site_id: str, entity_kind: str, payload: dict) -> str:
        """Append a new operation and return its id.

        Raises:
            StorageError: The operation could not be recorded.
        """
        operation = PendingOperation(
            id=uuid.uuid4().hex,
            site_id=site_id,
            entity_kind=entity_kind,
            payload=dict(payload),
        )
        await self._store.set(site_id, NS_PENDING, operation.id, operation.to_record())
        logger.info("Queued %s operation %s (site=%s)", entity_kind, operation.id, site_id)
        return operation.id

    async def list(self, site_id: str, entity_kind: str | None = None) -> list[PendingOperation]:
        """Return queued operations, oldest first."""
        operations = [
            PendingOperation.from_record(site_id, op_id, record)
            for op_id, record in await self._store.list(site_id, NS_PENDING)
        ]
        if entity_kind is not None:
            operations = [op for op in operations if op.entity_kind == entity_kind]
        return operations

    async def get(self, site_id: str, op_id: str) -> PendingOperation | None:
        record = await self._store.get(site_id, NS_PENDING, op_id)
        if record is None:
            return None
        return PendingOperation.from_record(site_id, op_id, record)

    async def count(self, site_id: str, entity_kind: str | None = None) -> int:
        return len(await self.list(site_id, entity_kind))

    async def remove(self, site_id: str, op_id: str) -> bool:
        """Delete one operation.  Removing an unknown id is a no-op."""
        removed = await self._store.delete(site_id, NS_PENDING, op_id)
        if removed:
            logger.debug("Removed operation %s (site=%s)", op_id, site_id)
        return removed

    async def increment_attempts(self, site_id: str, op_id: str) -> int:
        """Bump the retry counter and return the new value (0 if unknown)."""
        operation = await self.get(site_id, op_id)
        if operation is None:
            return 0
        operation.attempts += 1
        await self._store.set(site_id, NS_PENDING, op_id, operation.to_record())
        return operation.attempts
