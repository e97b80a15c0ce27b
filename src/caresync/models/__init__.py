"""Database models for the offline store."""

from .base import Base
from .enums import ConflictResolution, JobState, RecordSide, SyncState
from .record import OfflineRecord, RecordIndexEntry, SupersededRecord
from .sync import SyncMetadata, SyncQueueEntry

__all__ = [
    "Base",
    "ConflictResolution",
    "JobState",
    "OfflineRecord",
    "RecordIndexEntry",
    "RecordSide",
    "SupersededRecord",
    "SyncMetadata",
    "SyncQueueEntry",
    "SyncState",
]
