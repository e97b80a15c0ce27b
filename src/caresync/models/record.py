"""Offline record tables.

`offline_records` holds the canonical on-device copy of every entity,
`superseded_records` keeps the losing side of every reconciliation and
`record_index` backs secondary lookups on payload fields.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .db_types import UTCDateTime
from .enums import RecordSide, SyncState


class OfflineRecord(TimestampMixin, Base):
    """Canonical local copy of a record plus its sync bookkeeping."""

    __tablename__ = "offline_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "record_id", name="uq_offline_record"),
        Index("idx_offline_sync_state", "sync_state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)

    data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Writer-assigned wall clock
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    local_revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    synced_revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sync_state: Mapped[SyncState] = mapped_column(
        SQLAlchemyEnum(SyncState, native_enum=False, length=20),
        default=SyncState.PENDING,
        nullable=False,
    )

    # Last version known to be on the remote (the shared ancestor)
    remote_updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    base_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of OfflineRecord."""
        return (
            f"<OfflineRecord({self.entity_type}:{self.record_id}, "
            f"rev={self.local_revision}, state={self.sync_state})>"
        )


class SupersededRecord(TimestampMixin, Base):
    """A version that lost a reconciliation, kept for audit and recovery."""

    __tablename__ = "superseded_records"
    __table_args__ = (Index("idx_superseded_record", "entity_type", "record_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)

    data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    local_revision: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    source: Mapped[RecordSide] = mapped_column(
        SQLAlchemyEnum(RecordSide, native_enum=False, length=20), nullable=False
    )
    winner: Mapped[RecordSide] = mapped_column(
        SQLAlchemyEnum(RecordSide, native_enum=False, length=20), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class RecordIndexEntry(Base):
    """Secondary index row: one per indexed payload field of a record."""

    __tablename__ = "record_index"
    __table_args__ = (
        UniqueConstraint("entity_type", "record_id", "field", name="uq_record_index"),
        Index("idx_record_index_lookup", "entity_type", "field", "value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
