"""Reconciliation of local and remote versions of a record.

`reconcile` is a pure decision over the two versions and the sync baseline the
local copy carries. `apply` runs the decision under the record lock and writes
the outcome through the local record store, retaining any losing version.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from caresync.core.exceptions import ConflictDivergence
from caresync.models import ConflictResolution, RecordSide
from caresync.sync.change_tracker import ChangeTracker
from caresync.sync.offline_storage import LocalRecordStore
from caresync.sync.records import Record, RemoteRecord
from caresync.utils.logging import get_logger

logger = get_logger(__name__)

Version = Union[Record, RemoteRecord]

_MISSING = object()


@dataclass
class KeepLocal:
    """The local copy stays canonical."""

    updated_at: Optional[datetime]
    reason: str
    superseded: Optional[RemoteRecord] = None
    diverged: bool = False
    manual: bool = False


@dataclass
class KeepRemote:
    """The remote version replaces the local copy."""

    remote: RemoteRecord
    updated_at: datetime
    reason: str
    superseded: Optional[Record] = None


@dataclass
class Merged:
    """Field-level merge of both sides."""

    payload: Dict[str, Any]
    updated_at: datetime
    reason: str
    superseded: Optional[Version] = None
    conflicting_fields: List[str] = field(default_factory=list)


ReconcileResult = Union[KeepLocal, KeepRemote, Merged]


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def is_diverged(local: Record, remote: RemoteRecord) -> bool:
    """Both sides changed since the last successful sync."""
    if not local.has_unsynced_changes:
        return False
    if local.remote_updated_at is None:
        return True
    return remote.updated_at > local.remote_updated_at


class ConflictResolver:
    """Decides and applies the canonical version of a record."""

    def __init__(
        self,
        store: LocalRecordStore,
        tracker: ChangeTracker,
        strategy: ConflictResolution = ConflictResolution.LAST_WRITE_WINS,
    ):
        self.store = store
        self.tracker = tracker
        self.strategy = strategy

    def reconcile(self, local: Optional[Record], remote: RemoteRecord) -> ReconcileResult:
        """Choose between the local copy and a remote version."""
        if local is None:
            return KeepRemote(remote, remote.updated_at, "new remote record")

        if not is_diverged(local, remote):
            if local.has_unsynced_changes:
                return KeepLocal(local.updated_at, "remote unchanged since last sync")
            if local.updated_at is None or remote.updated_at > local.updated_at:
                return KeepRemote(remote, remote.updated_at, "remote is newer")
            return KeepLocal(local.updated_at, "local copy is current")

        reason = str(ConflictDivergence(local.entity_type, local.id))
        latest = _latest(local.updated_at, remote.updated_at)

        if self.strategy == ConflictResolution.SERVER_WINS:
            return KeepRemote(remote, latest, reason, superseded=local)
        if self.strategy == ConflictResolution.CLIENT_WINS:
            return KeepLocal(latest, reason, superseded=remote, diverged=True)

        if local.deleted or remote.deleted:
            return self._reconcile_tombstone(local, remote, latest)

        if self.strategy == ConflictResolution.MANUAL:
            return KeepLocal(
                latest,
                str(ConflictDivergence(local.entity_type, local.id, "awaiting manual review")),
                superseded=remote,
                diverged=True,
                manual=True,
            )
        if self.strategy == ConflictResolution.MERGE:
            return self._merge(local, remote, latest)

        if self._remote_wins(local, remote):
            return KeepRemote(remote, latest, reason, superseded=local)
        return KeepLocal(latest, reason, superseded=remote, diverged=True)

    @staticmethod
    def _remote_wins(local: Record, remote: RemoteRecord) -> bool:
        # Ties go to the unsynced local edit
        return local.updated_at is None or remote.updated_at > local.updated_at

    def _reconcile_tombstone(
        self, local: Record, remote: RemoteRecord, latest: Optional[datetime]
    ) -> ReconcileResult:
        if local.deleted and remote.deleted:
            return KeepRemote(remote, latest, "deleted on both sides")

        if local.deleted:
            if local.updated_at is not None and remote.updated_at > local.updated_at:
                return KeepRemote(
                    remote, latest, "remote update is newer than local deletion", superseded=local
                )
            return KeepLocal(
                latest, "local deletion takes precedence", superseded=remote, diverged=True
            )

        if remote.updated_at >= (local.updated_at or remote.updated_at):
            return KeepRemote(
                remote, latest, "remote deletion takes precedence", superseded=local
            )
        return KeepLocal(
            latest, "local update is newer than remote deletion", superseded=remote, diverged=True
        )

    def _merge(
        self, local: Record, remote: RemoteRecord, latest: Optional[datetime]
    ) -> ReconcileResult:
        base = local.base_payload or {}
        remote_wins = self._remote_wins(local, remote)
        merged: Dict[str, Any] = {}
        conflicting: List[str] = []

        for key in sorted(set(local.payload) | set(remote.payload) | set(base)):
            mine = local.payload.get(key, _MISSING)
            theirs = remote.payload.get(key, _MISSING)
            ancestor = base.get(key, _MISSING)

            if mine == theirs:
                value = mine
            elif mine == ancestor:
                value = theirs
            elif theirs == ancestor:
                value = mine
            else:
                conflicting.append(key)
                value = theirs if remote_wins else mine

            if value is not _MISSING:
                merged[key] = value

        superseded: Optional[Version] = None
        if conflicting:
            superseded = local if remote_wins else remote
        reason = str(
            ConflictDivergence(
                local.entity_type,
                local.id,
                f"merged; conflicting fields: {', '.join(conflicting)}" if conflicting else "merged",
            )
        )

        if merged == remote.payload and latest == remote.updated_at:
            return KeepRemote(remote, latest, reason, superseded=superseded)
        if merged == local.payload:
            return KeepLocal(latest, reason, superseded=superseded, diverged=True)
        return Merged(merged, latest, reason, superseded=superseded, conflicting_fields=conflicting)

    def apply(self, remote: RemoteRecord) -> Tuple[ReconcileResult, Optional[Record]]:
        """Reconcile a remote version against the local copy and write the result.

        Returns the decision and the local record afterwards.
        """
        database = self.store.database
        with database.record_lock(remote.entity_type, remote.id):
            local = self.store.get(remote.entity_type, remote.id, include_deleted=True)
            result = self.reconcile(local, remote)
            remote_base = None if remote.deleted else remote.payload

            if isinstance(result, KeepRemote):
                stored: Optional[Record] = self.store.apply_remote(
                    remote.entity_type,
                    remote.id,
                    payload=remote.payload,
                    deleted=remote.deleted,
                    updated_at=result.updated_at,
                    remote_updated_at=remote.updated_at,
                    base_payload=remote_base,
                    in_sync=result.updated_at == remote.updated_at,
                )
                winner = RecordSide.REMOTE
            elif isinstance(result, Merged):
                stored = self.store.apply_remote(
                    remote.entity_type,
                    remote.id,
                    payload=result.payload,
                    deleted=False,
                    updated_at=result.updated_at,
                    remote_updated_at=remote.updated_at,
                    base_payload=remote_base,
                    in_sync=False,
                )
                winner = RecordSide.MERGED
            else:
                stored = local
                winner = RecordSide.LOCAL
                if result.diverged and local is not None:
                    if result.updated_at is not None and (
                        local.updated_at is None or result.updated_at > local.updated_at
                    ):
                        stored = self.store.apply_remote(
                            local.entity_type,
                            local.id,
                            payload=local.payload,
                            deleted=local.deleted,
                            updated_at=result.updated_at,
                            remote_updated_at=remote.updated_at,
                            base_payload=remote_base,
                            in_sync=False,
                        )
                    else:
                        self.store.update_baseline(
                            local.entity_type, local.id, remote.updated_at, remote_base
                        )
                if result.manual:
                    self.tracker.mark_conflict(remote.entity_type, remote.id, result.reason)
                if local is not None and (result.diverged or result.manual):
                    stored = self.store.get(local.entity_type, local.id, include_deleted=True)

            if result.superseded is not None:
                source = RecordSide.LOCAL if isinstance(result.superseded, Record) else RecordSide.REMOTE
                self.store.record_superseded(result.superseded, source, winner, result.reason)

        logger.debug(
            "sync_reconciled",
            entity_type=remote.entity_type,
            record_id=remote.id,
            outcome=type(result).__name__,
            reason=result.reason,
        )
        return result, stored
