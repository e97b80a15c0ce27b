"""Local record store for offline-first clinical data.

The store exclusively owns the canonical on-device copy of each record. Every
local write bumps the record's revision, marks it pending and enqueues a sync
job in the same transaction, so a write either lands completely or not at all.
"""

import os
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from caresync.core.exceptions import RecordNotFoundError, ValidationError
from caresync.models import (
    OfflineRecord,
    RecordIndexEntry,
    RecordSide,
    SupersededRecord,
    SyncState,
)
from caresync.models.db_types import as_utc, utcnow
from caresync.sync.change_tracker import ChangeTracker
from caresync.sync.database import OfflineDatabase
from caresync.sync.records import Record, RemoteRecord, SupersededVersion
from caresync.utils.logging import get_logger

logger = get_logger(__name__)

Predicate = Callable[[Record], bool]


class RecordQuery:
    """Lazy, restartable iteration over one entity type.

    Each iteration pages through rows by primary key up to the highest key that
    existed when the iteration started, so it always terminates and never sees
    a row twice. Records written during iteration may or may not be included.
    """

    def __init__(
        self,
        store: "LocalRecordStore",
        entity_type: str,
        predicate: Optional[Predicate] = None,
        include_deleted: bool = False,
        page_size: int = 200,
    ):
        self.store = store
        self.entity_type = entity_type
        self.predicate = predicate
        self.include_deleted = include_deleted
        self.page_size = page_size

    def __iter__(self) -> Iterator[Record]:
        database = self.store.database
        with database.session_scope() as session:
            upper = session.execute(
                select(func.max(OfflineRecord.id)).where(
                    OfflineRecord.entity_type == self.entity_type
                )
            ).scalar()
        if upper is None:
            return

        last_id = 0
        while True:
            with database.session_scope() as session:
                query = (
                    select(OfflineRecord)
                    .where(
                        OfflineRecord.entity_type == self.entity_type,
                        OfflineRecord.id > last_id,
                        OfflineRecord.id <= upper,
                    )
                    .order_by(OfflineRecord.id)
                    .limit(self.page_size)
                )
                if not self.include_deleted:
                    query = query.where(OfflineRecord.deleted.is_(False))
                rows = session.execute(query).scalars().all()
                page = [(row.id, self.store._to_record(row)) for row in rows]

            if not page:
                return
            for row_id, record in page:
                last_id = row_id
                if self.predicate is None or self.predicate(record):
                    yield record


class LocalRecordStore:
    """Durable per-entity-type record storage addressed by `(entity_type, id)`."""

    def __init__(
        self,
        database: OfflineDatabase,
        tracker: ChangeTracker,
        index_fields: Optional[Dict[str, Sequence[str]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store.

        Args:
            database: Offline database
            tracker: Change tracker that receives a job for every local write
            index_fields: Payload fields to index for `find_by`, per entity type
            clock: Source of the current time
        """
        self.database = database
        self.tracker = tracker
        self.index_fields = {k: list(v) for k, v in (index_fields or {}).items()}
        self.clock = clock

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _validate(entity_type: Any, record_id: Any) -> None:
        if not isinstance(entity_type, str) or not entity_type.strip():
            raise ValidationError("entity_type is required")
        if not isinstance(record_id, str) or not record_id.strip():
            raise ValidationError("id is required")

    @staticmethod
    def _row(session: Session, entity_type: str, record_id: str) -> Optional[OfflineRecord]:
        return session.execute(
            select(OfflineRecord).where(
                OfflineRecord.entity_type == entity_type,
                OfflineRecord.record_id == record_id,
            )
        ).scalar_one_or_none()

    def _to_record(self, row: OfflineRecord) -> Record:
        payload = self.database.decode_payload(row.data, row.encrypted)
        base = self.database.decode_payload(row.base_data, row.encrypted)
        return Record(
            entity_type=row.entity_type,
            id=row.record_id,
            payload=payload or {},
            updated_at=row.updated_at,
            local_revision=row.local_revision,
            sync_state=row.sync_state,
            deleted=row.deleted,
            synced_revision=row.synced_revision,
            remote_updated_at=row.remote_updated_at,
            base_payload=base,
        )

    def _reindex(
        self,
        session: Session,
        entity_type: str,
        record_id: str,
        payload: Optional[Dict[str, Any]],
    ) -> None:
        fields = self.index_fields.get(entity_type)
        if not fields:
            return
        session.execute(
            delete(RecordIndexEntry).where(
                RecordIndexEntry.entity_type == entity_type,
                RecordIndexEntry.record_id == record_id,
            )
        )
        if payload is None:
            return
        for field in fields:
            if field in payload and payload[field] is not None:
                session.add(
                    RecordIndexEntry(
                        entity_type=entity_type,
                        record_id=record_id,
                        field=field,
                        value=str(payload[field])[:255],
                    )
                )

    # -- local CRUD ------------------------------------------------------

    def put(self, record: Record) -> Record:
        """Write a record locally and queue it for sync.

        Raises:
            ValidationError: entity_type or id missing, payload not a dict
            StorageFailure: the write could not be committed
        """
        self._validate(record.entity_type, record.id)
        if not isinstance(record.payload, dict):
            raise ValidationError("payload must be a mapping")

        updated_at = as_utc(record.updated_at) or self.clock()

        with self.database.record_lock(record.entity_type, record.id):
            with self.database.session_scope() as session:
                data, encrypted = self.database.encode_payload(record.payload)
                row = self._row(session, record.entity_type, record.id)
                if row is None:
                    row = OfflineRecord(
                        entity_type=record.entity_type,
                        record_id=record.id,
                        local_revision=1,
                        synced_revision=0,
                    )
                    session.add(row)
                else:
                    row.local_revision += 1

                row.data = data
                row.encrypted = encrypted
                row.deleted = False
                row.deleted_at = None
                row.updated_at = updated_at
                row.sync_state = SyncState.PENDING
                session.flush()

                self._reindex(session, record.entity_type, record.id, record.payload)
                self.tracker.mark_pending(record.entity_type, record.id, session=session)
                stored = self._to_record(row)

        logger.debug(
            "offline_record_stored",
            entity_type=stored.entity_type,
            record_id=stored.id,
            revision=stored.local_revision,
        )
        return stored

    def get(self, entity_type: str, record_id: str, include_deleted: bool = False) -> Optional[Record]:
        """Return the current record, or None when absent (or a tombstone)."""
        with self.database.session_scope() as session:
            row = self._row(session, entity_type, record_id)
            if row is None or (row.deleted and not include_deleted):
                return None
            return self._to_record(row)

    def query(
        self,
        entity_type: str,
        predicate: Optional[Predicate] = None,
        include_deleted: bool = False,
    ) -> RecordQuery:
        """Records of one entity type matching `predicate`."""
        return RecordQuery(self, entity_type, predicate, include_deleted)

    def delete(self, entity_type: str, record_id: str) -> Record:
        """Replace a record with a tombstone so the deletion itself syncs.

        Raises:
            RecordNotFoundError: no such record
        """
        self._validate(entity_type, record_id)

        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                row = self._row(session, entity_type, record_id)
                if row is None:
                    raise RecordNotFoundError(entity_type, record_id)
                if row.deleted:
                    return self._to_record(row)

                now = self.clock()
                row.local_revision += 1
                row.data = None
                row.deleted = True
                row.deleted_at = now
                row.updated_at = now
                row.sync_state = SyncState.PENDING
                session.flush()

                self._reindex(session, entity_type, record_id, None)
                self.tracker.mark_pending(entity_type, record_id, session=session)
                tombstone = self._to_record(row)

        logger.info(
            "offline_record_deleted",
            entity_type=entity_type,
            record_id=record_id,
            revision=tombstone.local_revision,
        )
        return tombstone

    def find_by(self, entity_type: str, field: str, value: Any) -> List[Record]:
        """Indexed lookup on a configured payload field."""
        if field not in self.index_fields.get(entity_type, []):
            raise ValidationError(f"{entity_type}.{field} is not an indexed field")

        with self.database.session_scope() as session:
            rows = (
                session.execute(
                    select(OfflineRecord)
                    .join(
                        RecordIndexEntry,
                        (RecordIndexEntry.entity_type == OfflineRecord.entity_type)
                        & (RecordIndexEntry.record_id == OfflineRecord.record_id),
                    )
                    .where(
                        RecordIndexEntry.entity_type == entity_type,
                        RecordIndexEntry.field == field,
                        RecordIndexEntry.value == str(value),
                        OfflineRecord.deleted.is_(False),
                    )
                    .order_by(OfflineRecord.id)
                )
                .scalars()
                .all()
            )
            return [self._to_record(row) for row in rows]

    # -- sync-facing writes ---------------------------------------------

    def apply_remote(
        self,
        entity_type: str,
        record_id: str,
        payload: Optional[Dict[str, Any]],
        deleted: bool,
        updated_at: datetime,
        remote_updated_at: Optional[datetime],
        base_payload: Optional[Dict[str, Any]],
        in_sync: bool,
    ) -> Record:
        """Write the canonical version chosen by reconciliation.

        `in_sync` means the written version equals what the remote holds, so
        the record becomes clean and its job is dropped. Otherwise the record
        is pending and will be pushed.
        """
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                row = self._row(session, entity_type, record_id)
                if row is None:
                    row = OfflineRecord(
                        entity_type=entity_type,
                        record_id=record_id,
                        local_revision=1,
                        synced_revision=0,
                    )
                    session.add(row)
                else:
                    row.local_revision += 1

                data, encrypted = self.database.encode_payload(None if deleted else payload)
                row.data = data
                row.encrypted = encrypted
                row.deleted = deleted
                row.deleted_at = as_utc(updated_at) if deleted else None
                row.updated_at = as_utc(updated_at)
                row.remote_updated_at = as_utc(remote_updated_at)
                row.base_data, _ = self.database.encode_payload(base_payload)
                session.flush()

                if in_sync:
                    row.synced_revision = row.local_revision
                    row.synced_at = self.clock()
                    row.sync_state = SyncState.CLEAN
                    self.tracker.remove(entity_type, record_id, session=session)
                else:
                    row.sync_state = SyncState.PENDING
                    self.tracker.mark_pending(entity_type, record_id, session=session)

                self._reindex(session, entity_type, record_id, None if deleted else payload)
                return self._to_record(row)

    def update_baseline(
        self,
        entity_type: str,
        record_id: str,
        remote_updated_at: Optional[datetime],
        base_payload: Optional[Dict[str, Any]],
    ) -> None:
        """Remember the remote version a kept local copy has now seen."""
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                row = self._row(session, entity_type, record_id)
                if row is None:
                    raise RecordNotFoundError(entity_type, record_id)
                row.remote_updated_at = as_utc(remote_updated_at)
                row.base_data, _ = self.database.encode_payload(base_payload)

    def purge_tombstones(self, older_than: datetime) -> int:
        """Physically remove synced tombstones confirmed before `older_than`."""
        cutoff = as_utc(older_than)
        with self.database.session_scope() as session:
            result = session.execute(
                delete(OfflineRecord).where(
                    OfflineRecord.deleted.is_(True),
                    OfflineRecord.sync_state == SyncState.CLEAN,
                    OfflineRecord.synced_at.is_not(None),
                    OfflineRecord.synced_at < cutoff,
                )
            )
            count = result.rowcount or 0
        if count:
            logger.info("offline_tombstones_purged", count=count)
        return count

    # -- superseded versions ---------------------------------------------

    def record_superseded(
        self,
        version: Union[Record, RemoteRecord],
        source: RecordSide,
        winner: RecordSide,
        reason: str,
    ) -> int:
        """Keep the losing side of a reconciliation."""
        revision = version.local_revision if isinstance(version, Record) else version.revision
        payload = None if version.deleted else version.payload
        with self.database.session_scope() as session:
            data, encrypted = self.database.encode_payload(payload)
            row = SupersededRecord(
                entity_type=version.entity_type,
                record_id=version.id,
                data=data,
                encrypted=encrypted,
                deleted=version.deleted,
                updated_at=as_utc(version.updated_at),
                local_revision=revision,
                source=source,
                winner=winner,
                reason=reason[:255],
            )
            session.add(row)
            session.flush()
            superseded_id = row.id

        logger.warning(
            "sync_version_superseded",
            entity_type=version.entity_type,
            record_id=version.id,
            source=source.value,
            winner=winner.value,
            reason=reason,
        )
        return superseded_id

    def _to_superseded(self, row: SupersededRecord) -> SupersededVersion:
        return SupersededVersion(
            id=row.id,
            entity_type=row.entity_type,
            record_id=row.record_id,
            payload=self.database.decode_payload(row.data, row.encrypted),
            updated_at=row.updated_at,
            local_revision=row.local_revision,
            deleted=row.deleted,
            source=row.source,
            winner=row.winner,
            reason=row.reason,
            acknowledged=row.acknowledged,
            created_at=row.created_at,
        )

    def list_superseded(
        self,
        entity_type: Optional[str] = None,
        record_id: Optional[str] = None,
        include_acknowledged: bool = False,
        limit: int = 500,
    ) -> List[SupersededVersion]:
        """Superseded versions, newest first."""
        with self.database.session_scope() as session:
            query = select(SupersededRecord).order_by(SupersededRecord.id.desc()).limit(limit)
            if entity_type is not None:
                query = query.where(SupersededRecord.entity_type == entity_type)
            if record_id is not None:
                query = query.where(SupersededRecord.record_id == record_id)
            if not include_acknowledged:
                query = query.where(SupersededRecord.acknowledged.is_(False))
            return [self._to_superseded(row) for row in session.execute(query).scalars().all()]

    def acknowledge_superseded(self, superseded_id: int) -> SupersededVersion:
        """Mark a superseded version as reviewed; it is still retained."""
        with self.database.session_scope() as session:
            row = session.get(SupersededRecord, superseded_id)
            if row is None:
                raise RecordNotFoundError("superseded", str(superseded_id))
            row.acknowledged = True
            row.acknowledged_at = self.clock()
            session.flush()
            return self._to_superseded(row)

    # -- statistics ------------------------------------------------------

    def count_by_state(self) -> Dict[str, int]:
        """Number of records per sync state (tombstones included)."""
        result = {state.value: 0 for state in SyncState}
        with self.database.session_scope() as session:
            rows = session.execute(
                select(OfflineRecord.sync_state, func.count()).group_by(OfflineRecord.sync_state)
            ).all()
            for state, count in rows:
                result[state.value] = count
        return result

    def storage_info(self) -> Dict[str, Any]:
        """Offline storage statistics."""
        info: Dict[str, Any] = {
            "db_size": None,
            "record_counts": {},
            "sync_status_counts": self.count_by_state(),
            "unacknowledged_superseded": 0,
        }
        if self.database.db_path is not None and self.database.db_path.exists():
            info["db_size"] = os.path.getsize(self.database.db_path)

        with self.database.session_scope() as session:
            for entity_type, count in session.execute(
                select(OfflineRecord.entity_type, func.count())
                .where(OfflineRecord.deleted.is_(False))
                .group_by(OfflineRecord.entity_type)
            ).all():
                info["record_counts"][entity_type] = count
            info["unacknowledged_superseded"] = session.execute(
                select(func.count())
                .select_from(SupersededRecord)
                .where(SupersededRecord.acknowledged.is_(False))
            ).scalar_one()

        return info
