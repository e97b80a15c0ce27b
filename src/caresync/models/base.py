"""Base model classes for the offline database."""

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from .db_types import UTCDateTime, utcnow

Base: Any = declarative_base()


class TimestampMixin:
    """Mixin for adding row bookkeeping timestamps.

    These track when the row was written locally and are distinct from a
    record's domain `updated_at`, which is set by the writer.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    modified_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
