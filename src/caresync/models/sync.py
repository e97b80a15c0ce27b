"""Sync queue and sync metadata tables."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .db_types import UTCDateTime
from .enums import JobState


class SyncQueueEntry(TimestampMixin, Base):
    """Pending push for one record.

    At most one entry exists per record; repeated local edits collapse into it.
    The autoincrement id doubles as the FIFO creation sequence.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        UniqueConstraint("entity_type", "record_id", name="uq_sync_queue_record"),
        Index("idx_sync_queue_state", "state", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[JobState] = mapped_column(
        SQLAlchemyEnum(JobState, native_enum=False, length=20),
        default=JobState.CREATED,
        nullable=False,
    )

    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of SyncQueueEntry."""
        return (
            f"<SyncQueueEntry(id={self.id}, {self.entity_type}:{self.record_id}, "
            f"state={self.state}, attempts={self.attempt_count})>"
        )


class SyncMetadata(TimestampMixin, Base):
    """Key/value sync bookkeeping (device id, pull watermarks)."""

    __tablename__ = "sync_metadata"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
