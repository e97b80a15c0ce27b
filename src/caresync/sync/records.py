"""Plain data objects passed between the store, tracker, dispatcher and resolver."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from caresync.models.enums import JobState, RecordSide, SyncState


@dataclass
class Record:
    """A domain entity as seen by the sync layer.

    Only `entity_type`, `id` and `payload` are set by callers; the remaining
    fields are owned by the local store.
    """

    entity_type: str
    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    local_revision: int = 0
    sync_state: SyncState = SyncState.PENDING
    deleted: bool = False

    synced_revision: int = 0
    remote_updated_at: Optional[datetime] = None
    base_payload: Optional[Dict[str, Any]] = None

    @property
    def has_unsynced_changes(self) -> bool:
        """True when local mutations have not been acknowledged by the remote."""
        return self.local_revision > self.synced_revision

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.id)


@dataclass
class RemoteRecord:
    """A record as returned by the remote authority."""

    entity_type: str
    id: str
    payload: Dict[str, Any]
    updated_at: datetime
    deleted: bool = False
    revision: Optional[int] = None
    # Value of the remote pull cursor column when it is not updated_at
    cursor_value: Optional[datetime] = None

    @property
    def watermark(self) -> datetime:
        return self.cursor_value or self.updated_at


@dataclass
class PushAck:
    """Remote acknowledgement of a pushed local revision."""

    revision: int
    remote_updated_at: Optional[datetime] = None


@dataclass
class SyncJob:
    """Snapshot of a sync queue entry."""

    sequence: int
    entity_type: str
    record_id: str
    state: JobState
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class SupersededVersion:
    """A losing version retained after reconciliation."""

    id: int
    entity_type: str
    record_id: str
    payload: Optional[Dict[str, Any]]
    updated_at: Optional[datetime]
    local_revision: Optional[int]
    deleted: bool
    source: RecordSide
    winner: RecordSide
    reason: str
    acknowledged: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "payload": self.payload,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "local_revision": self.local_revision,
            "deleted": self.deleted,
            "source": self.source.value,
            "winner": self.winner.value,
            "reason": self.reason,
            "acknowledged": self.acknowledged,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
