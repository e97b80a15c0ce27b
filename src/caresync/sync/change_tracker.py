"""Change tracking for local mutations.

Every local write leaves exactly one queue entry per record behind it. The
entry carries retry bookkeeping; the record row carries the revision that the
remote has acknowledged.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from caresync.core.exceptions import RecordNotFoundError
from caresync.models import JobState, OfflineRecord, SyncQueueEntry, SyncState
from caresync.models.db_types import as_utc, utcnow
from caresync.sync.database import OfflineDatabase
from caresync.sync.records import SyncJob
from caresync.utils.logging import get_logger

logger = get_logger(__name__)


def _to_job(entry: SyncQueueEntry) -> SyncJob:
    return SyncJob(
        sequence=entry.id,
        entity_type=entry.entity_type,
        record_id=entry.record_id,
        state=entry.state,
        attempt_count=entry.attempt_count,
        last_error=entry.last_error,
        next_attempt_at=entry.next_attempt_at,
        created_at=entry.created_at,
    )


class ChangeTracker:
    """Maintains the sync queue and the pending/clean marker of each record."""

    def __init__(
        self,
        database: OfflineDatabase,
        max_attempts: int = 5,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize change tracker.

        Args:
            database: Offline database shared with the record store
            max_attempts: Failed pushes before a job is dead-lettered
            backoff_base_seconds: Delay after the first failure
            backoff_max_seconds: Upper bound for the retry delay
            clock: Source of the current time
        """
        self.database = database
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.clock = clock

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Delay before retrying a job that has failed `attempt_count` times."""
        exponent = max(attempt_count - 1, 0)
        seconds = min(self.backoff_base_seconds * (2**exponent), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    @staticmethod
    def _entry(session: Session, entity_type: str, record_id: str) -> Optional[SyncQueueEntry]:
        return session.execute(
            select(SyncQueueEntry).where(
                SyncQueueEntry.entity_type == entity_type,
                SyncQueueEntry.record_id == record_id,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _record(session: Session, entity_type: str, record_id: str) -> Optional[OfflineRecord]:
        return session.execute(
            select(OfflineRecord).where(
                OfflineRecord.entity_type == entity_type,
                OfflineRecord.record_id == record_id,
            )
        ).scalar_one_or_none()

    def mark_pending(
        self,
        entity_type: str,
        record_id: str,
        session: Optional[Session] = None,
    ) -> SyncJob:
        """Ensure a job exists for the record.

        Repeated edits before the job is pushed collapse into the same entry.
        Pass `session` to enqueue within the caller's write transaction.
        """
        if session is not None:
            return self._mark_pending(session, entity_type, record_id)

        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as own_session:
                return self._mark_pending(own_session, entity_type, record_id)

    def _mark_pending(self, session: Session, entity_type: str, record_id: str) -> SyncJob:
        entry = self._entry(session, entity_type, record_id)
        if entry is None:
            entry = SyncQueueEntry(
                entity_type=entity_type,
                record_id=record_id,
                state=JobState.CREATED,
                attempt_count=0,
            )
            session.add(entry)
            session.flush()
        elif entry.state in (JobState.CONFLICT, JobState.DEAD_LETTERED):
            # A fresh edit is a new attempt at getting the record accepted
            entry.state = JobState.CREATED
            entry.attempt_count = 0
            entry.last_error = None
            entry.next_attempt_at = None
            session.flush()

        return _to_job(entry)

    def mark_clean(
        self,
        entity_type: str,
        record_id: str,
        acked_revision: int,
        remote_updated_at: Optional[datetime] = None,
        acked_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record a remote acknowledgement of `acked_revision`.

        Returns True when the record is clean afterwards. Acks for a revision at
        or below the last acknowledged one are ignored. When the record changed
        after the push was sent it stays pending and is queued again.
        """
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                row = self._record(session, entity_type, record_id)
                entry = self._entry(session, entity_type, record_id)

                if row is None:
                    if entry is not None:
                        session.delete(entry)
                    return False

                if acked_revision <= row.synced_revision:
                    logger.debug(
                        "sync_stale_ack_ignored",
                        entity_type=entity_type,
                        record_id=record_id,
                        acked_revision=acked_revision,
                        synced_revision=row.synced_revision,
                    )
                    return row.sync_state == SyncState.CLEAN

                if acked_revision > row.local_revision:
                    logger.warning(
                        "sync_ack_ahead_of_local",
                        entity_type=entity_type,
                        record_id=record_id,
                        acked_revision=acked_revision,
                        local_revision=row.local_revision,
                    )
                    return False

                now = self.clock()
                row.synced_revision = acked_revision
                row.synced_at = now
                if remote_updated_at is not None:
                    row.remote_updated_at = as_utc(remote_updated_at)
                if acked_payload is not None:
                    row.base_data, _ = self.database.encode_payload(acked_payload)

                if acked_revision == row.local_revision:
                    row.sync_state = SyncState.CLEAN
                    if entry is not None:
                        session.delete(entry)
                    return True

                # Mutated while the push was in flight: re-send the newer state
                row.sync_state = SyncState.PENDING
                if entry is None:
                    self._mark_pending(session, entity_type, record_id)
                else:
                    entry.state = JobState.CREATED
                    entry.attempt_count = 0
                    entry.last_error = None
                    entry.next_attempt_at = None
                logger.info(
                    "sync_record_changed_during_push",
                    entity_type=entity_type,
                    record_id=record_id,
                    acked_revision=acked_revision,
                    local_revision=row.local_revision,
                )
                return False

    def mark_failed(self, entity_type: str, record_id: str, error: str) -> Optional[SyncJob]:
        """Count a failed push and schedule a retry, or dead-letter the job."""
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                entry = self._entry(session, entity_type, record_id)
                if entry is None:
                    return None

                now = self.clock()
                entry.attempt_count = (entry.attempt_count or 0) + 1
                entry.last_error = error
                entry.last_attempt_at = now

                if entry.attempt_count >= self.max_attempts:
                    entry.state = JobState.DEAD_LETTERED
                    entry.next_attempt_at = None
                    row = self._record(session, entity_type, record_id)
                    if row is not None:
                        row.sync_state = SyncState.FAILED
                    logger.error(
                        "sync_job_dead_lettered",
                        entity_type=entity_type,
                        record_id=record_id,
                        attempts=entry.attempt_count,
                        error=error,
                    )
                else:
                    entry.state = JobState.BACKOFF
                    entry.next_attempt_at = now + self.backoff_delay(entry.attempt_count)
                    logger.warning(
                        "sync_retry_scheduled",
                        entity_type=entity_type,
                        record_id=record_id,
                        attempts=entry.attempt_count,
                        next_attempt_at=entry.next_attempt_at.isoformat(),
                        error=error,
                    )

                session.flush()
                return _to_job(entry)

    def mark_conflict(self, entity_type: str, record_id: str, error: str) -> Optional[SyncJob]:
        """Park a job the remote refused; it waits for a local fix or an operator."""
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                entry = self._entry(session, entity_type, record_id)
                row = self._record(session, entity_type, record_id)
                if row is not None:
                    row.sync_state = SyncState.CONFLICT
                if entry is None:
                    return None

                entry.state = JobState.CONFLICT
                entry.attempt_count = (entry.attempt_count or 0) + 1
                entry.last_error = error
                entry.last_attempt_at = self.clock()
                entry.next_attempt_at = None
                session.flush()
                logger.warning(
                    "sync_job_rejected",
                    entity_type=entity_type,
                    record_id=record_id,
                    error=error,
                )
                return _to_job(entry)

    def release(self, entity_type: str, record_id: str) -> None:
        """Return an in-flight job to the queue without counting an attempt."""
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                entry = self._entry(session, entity_type, record_id)
                if entry is not None and entry.state == JobState.IN_FLIGHT:
                    entry.state = JobState.CREATED

    def remove(self, entity_type: str, record_id: str, session: Optional[Session] = None) -> None:
        """Drop the job for a record, if any."""
        if session is not None:
            entry = self._entry(session, entity_type, record_id)
            if entry is not None:
                session.delete(entry)
            return

        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as own_session:
                self.remove(entity_type, record_id, session=own_session)

    def claim_eligible(self, limit: int, now: Optional[datetime] = None) -> List[SyncJob]:
        """Move up to `limit` runnable jobs to in_flight, oldest first."""
        now = now or self.clock()

        with self.database.session_scope() as session:
            entries = (
                session.execute(
                    select(SyncQueueEntry)
                    .where(
                        or_(
                            SyncQueueEntry.state == JobState.CREATED,
                            and_(
                                SyncQueueEntry.state == JobState.BACKOFF,
                                SyncQueueEntry.next_attempt_at <= now,
                            ),
                        )
                    )
                    .order_by(SyncQueueEntry.id)
                    .limit(limit)
                )
                .scalars()
                .all()
            )

            for entry in entries:
                entry.state = JobState.IN_FLIGHT
                entry.last_attempt_at = now
            return [_to_job(entry) for entry in entries]

    def recover_in_flight(self) -> int:
        """Requeue jobs left in flight by a previous process."""
        with self.database.session_scope() as session:
            entries = (
                session.execute(
                    select(SyncQueueEntry).where(SyncQueueEntry.state == JobState.IN_FLIGHT)
                )
                .scalars()
                .all()
            )
            for entry in entries:
                entry.state = JobState.CREATED
            if entries:
                logger.info("sync_in_flight_recovered", count=len(entries))
            return len(entries)

    def requeue(self, entity_type: str, record_id: str) -> SyncJob:
        """Operator retry of a dead-lettered or rejected record."""
        with self.database.record_lock(entity_type, record_id):
            with self.database.session_scope() as session:
                row = self._record(session, entity_type, record_id)
                if row is None:
                    raise RecordNotFoundError(entity_type, record_id)

                entry = self._entry(session, entity_type, record_id)
                if entry is None:
                    entry = SyncQueueEntry(entity_type=entity_type, record_id=record_id)
                    session.add(entry)
                entry.state = JobState.CREATED
                entry.attempt_count = 0
                entry.last_error = None
                entry.next_attempt_at = None
                if row.local_revision > row.synced_revision:
                    row.sync_state = SyncState.PENDING
                session.flush()
                logger.info("sync_job_requeued", entity_type=entity_type, record_id=record_id)
                return _to_job(entry)

    def get_job(self, entity_type: str, record_id: str) -> Optional[SyncJob]:
        """Current job for a record, if any."""
        with self.database.session_scope() as session:
            entry = self._entry(session, entity_type, record_id)
            return _to_job(entry) if entry else None

    def list_jobs(self, state: Optional[JobState] = None, limit: int = 500) -> List[SyncJob]:
        """Jobs in creation order, optionally filtered by state."""
        with self.database.session_scope() as session:
            query = select(SyncQueueEntry).order_by(SyncQueueEntry.id).limit(limit)
            if state is not None:
                query = query.where(SyncQueueEntry.state == state)
            return [_to_job(entry) for entry in session.execute(query).scalars().all()]

    def counts(self) -> Dict[str, int]:
        """Number of jobs per state."""
        result = {state.value: 0 for state in JobState}
        with self.database.session_scope() as session:
            rows = session.execute(
                select(SyncQueueEntry.state, func.count()).group_by(SyncQueueEntry.state)
            ).all()
            for state, count in rows:
                result[state.value] = count
        return result
