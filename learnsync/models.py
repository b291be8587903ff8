from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from learnsync.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LocalRecord(Base):
    """One value in the device-local store, scoped by site and namespace.

    The autoincrement ``id`` doubles as insertion order, which the
    pending-operation queue relies on for FIFO listing.
    """

    __tablename__ = "local_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(64))
    namespace: Mapped[str] = mapped_column(String(64))
    key: Mapped[str] = mapped_column(String(255))
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("site_id", "namespace", "key", name="uq_local_records_scope"),
        Index("idx_local_records_site_ns", "site_id", "namespace"),
    )
