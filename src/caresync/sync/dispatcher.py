"""Sync dispatcher.

Drains the change tracker: each tick claims runnable jobs in FIFO order and
pushes the current state of each record, with a bounded number of pushes in
flight and never more than one per record. Every push is a `PushTask` whose
outcome is kept in a bounded history for diagnostics.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from caresync.core.exceptions import (
    AuthFailure,
    CareSyncError,
    RejectedSyncFailure,
    SyncFailure,
)
from caresync.models import JobState
from caresync.models.db_types import utcnow
from caresync.sync import metrics
from caresync.sync.change_tracker import ChangeTracker
from caresync.sync.conflict_resolver import ConflictResolver, KeepLocal
from caresync.sync.offline_storage import LocalRecordStore
from caresync.sync.records import Record, SyncJob
from caresync.sync.remote_client import RemoteAuthorityClient
from caresync.utils.logging import get_logger

logger = get_logger(__name__)


class PushOutcome(str, Enum):
    """Result of one push attempt."""

    SUCCEEDED = "succeeded"
    REQUEUED = "requeued"  # acked, but the record changed meanwhile
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    CONFLICT = "conflict"
    RECONCILED = "reconciled"
    PAUSED = "paused"
    SKIPPED = "skipped"


@dataclass
class PushTask:
    """One push of one record."""

    job: SyncJob
    revision: Optional[int] = None
    outcome: Optional[PushOutcome] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.job.entity_type,
            "record_id": self.job.record_id,
            "revision": self.revision,
            "attempt": self.job.attempt_count + 1,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class DispatchReport:
    """Summary of a dispatcher tick."""

    tasks: List[PushTask] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def claimed(self) -> int:
        return len(self.tasks)

    def count(self, outcome: PushOutcome) -> int:
        return sum(1 for task in self.tasks if task.outcome == outcome)


class SyncDispatcher:
    """Pushes pending records to the remote authority."""

    def __init__(
        self,
        store: LocalRecordStore,
        tracker: ChangeTracker,
        client: RemoteAuthorityClient,
        resolver: ConflictResolver,
        batch_size: int = 50,
        fan_out: int = 4,
        history_size: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize dispatcher.

        Args:
            store: Local record store to read current payloads from
            tracker: Change tracker holding the sync queue
            client: Remote authority client
            resolver: Resolver used when the remote reports a version conflict
            batch_size: Jobs claimed per tick
            fan_out: Concurrent pushes per tick
            history_size: Number of recent push tasks kept for diagnostics
            clock: Source of the current time
        """
        self.store = store
        self.tracker = tracker
        self.client = client
        self.resolver = resolver
        self.batch_size = batch_size
        self.fan_out = fan_out
        self.clock = clock

        self.history: Deque[PushTask] = deque(maxlen=history_size)
        self.pause_reason: Optional[str] = None
        self.on_pause: Optional[Callable[[str], None]] = None
        self._paused = False
        self._in_flight: Set[Tuple[str, str]] = set()
        self._tick_lock = asyncio.Lock()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def pause(self, reason: str) -> None:
        """Stop pushing until `resume` is called."""
        if self._paused:
            return
        self._paused = True
        self.pause_reason = reason
        logger.warning("sync_paused", reason=reason)
        if self.on_pause is not None:
            self.on_pause(reason)

    def resume(self) -> None:
        """Allow pushes again."""
        if not self._paused:
            return
        self._paused = False
        self.pause_reason = None
        logger.info("sync_resumed")

    async def tick(self) -> DispatchReport:
        """Run one dispatch pass."""
        report = DispatchReport()

        if self._paused:
            report.skipped_reason = "paused"
            return report
        if not await self.client.is_online():
            report.skipped_reason = "offline"
            return report

        async with self._tick_lock:
            # Ticks never overlap, so jobs claimed here are not in flight elsewhere
            jobs = self.tracker.claim_eligible(self.batch_size, now=self.clock())
            if jobs:
                semaphore = asyncio.Semaphore(self.fan_out)
                report.tasks = [PushTask(job=job) for job in jobs]
                await asyncio.gather(
                    *[asyncio.create_task(self._run(task, semaphore)) for task in report.tasks]
                )
                logger.info(
                    "sync_dispatch_completed",
                    claimed=report.claimed,
                    succeeded=report.count(PushOutcome.SUCCEEDED),
                    failed=report.count(PushOutcome.RETRY_SCHEDULED)
                    + report.count(PushOutcome.DEAD_LETTERED),
                )

        self.update_gauges()
        return report

    def update_gauges(self) -> None:
        for state, count in self.tracker.counts().items():
            metrics.sync_jobs.labels(state=state).set(count)

    async def _run(self, task: PushTask, semaphore: asyncio.Semaphore) -> None:
        key = task.job.key
        async with semaphore:
            self._in_flight.add(key)
            task.started_at = self.clock()
            try:
                if self._paused:
                    self.tracker.release(*key)
                    task.outcome = PushOutcome.PAUSED
                else:
                    await self._push(task)
            except CareSyncError as e:
                # Local failure while handling the push; try again next tick
                self.tracker.release(*key)
                task.outcome = PushOutcome.SKIPPED
                task.error = e.message
                logger.error(
                    "sync_push_local_error",
                    entity_type=key[0],
                    record_id=key[1],
                    error=e.message,
                )
            except Exception as e:
                # Count the attempt so the job backs off instead of staying in flight
                task.error = f"{type(e).__name__}: {e}"
                logger.exception(
                    "sync_push_unexpected_error",
                    entity_type=key[0],
                    record_id=key[1],
                    error=task.error,
                )
                job = self.tracker.get_job(*key)
                if job is not None and job.state == JobState.IN_FLIGHT:
                    self._schedule_retry(task, task.error)
                elif task.outcome is None:
                    task.outcome = PushOutcome.SKIPPED
            finally:
                self._in_flight.discard(key)
                task.finished_at = self.clock()
                self.history.append(task)
                if task.outcome is not None:
                    metrics.sync_pushes_total.labels(
                        entity_type=key[0], outcome=task.outcome.value
                    ).inc()

    async def _push(self, task: PushTask) -> None:
        entity_type, record_id = task.job.key
        record = self.store.get(entity_type, record_id, include_deleted=True)

        if record is None or not record.has_unsynced_changes:
            self.tracker.remove(entity_type, record_id)
            task.outcome = PushOutcome.SKIPPED
            return

        task.revision = record.local_revision
        started = time.perf_counter()
        try:
            ack = await self.client.push(entity_type, record)
        except AuthFailure as e:
            self.tracker.release(entity_type, record_id)
            task.outcome = PushOutcome.PAUSED
            task.error = e.message
            self.pause(e.message)
            return
        except RejectedSyncFailure as e:
            task.error = e.message
            if e.conflict:
                await self._reconcile(task, record)
            else:
                self.tracker.mark_conflict(entity_type, record_id, e.message)
                task.outcome = PushOutcome.CONFLICT
            return
        except SyncFailure as e:
            task.error = e.message
            if e.retryable:
                self._schedule_retry(task, e.message)
            else:
                self.tracker.mark_conflict(entity_type, record_id, e.message)
                task.outcome = PushOutcome.CONFLICT
            return
        finally:
            metrics.sync_push_duration_seconds.labels(entity_type=entity_type).observe(
                time.perf_counter() - started
            )

        clean = self.tracker.mark_clean(
            entity_type,
            record_id,
            ack.revision,
            remote_updated_at=ack.remote_updated_at or record.updated_at,
            acked_payload=None if record.deleted else record.payload,
        )
        task.outcome = PushOutcome.SUCCEEDED if clean else PushOutcome.REQUEUED
        logger.info(
            "sync_push_succeeded",
            entity_type=entity_type,
            record_id=record_id,
            revision=ack.revision,
            deleted=record.deleted,
        )

    def _schedule_retry(self, task: PushTask, error: str) -> None:
        job = self.tracker.mark_failed(task.job.entity_type, task.job.record_id, error)
        if job is not None and job.state == JobState.DEAD_LETTERED:
            task.outcome = PushOutcome.DEAD_LETTERED
        else:
            task.outcome = PushOutcome.RETRY_SCHEDULED

    async def _reconcile(self, task: PushTask, record: Record) -> None:
        entity_type, record_id = record.key
        try:
            remote = await self.client.fetch(entity_type, record_id)
        except SyncFailure as e:
            self._schedule_retry(task, f"version conflict; fetch failed: {e.message}")
            return

        if remote is None:
            self.tracker.mark_conflict(entity_type, record_id, task.error or "version conflict")
            task.outcome = PushOutcome.CONFLICT
            return

        result, stored = self.resolver.apply(remote)
        if stored is not None and stored.has_unsynced_changes:
            # Re-send the reconciled state; counted so a remote that keeps
            # refusing ends up dead-lettered
            job = self.tracker.get_job(entity_type, record_id)
            if job is not None and job.state == JobState.IN_FLIGHT:
                self._schedule_retry(task, "version conflict reconciled; re-sending")
                if task.outcome == PushOutcome.DEAD_LETTERED:
                    return
        if isinstance(result, KeepLocal) and result.manual:
            task.outcome = PushOutcome.CONFLICT
        else:
            task.outcome = PushOutcome.RECONCILED
        logger.info(
            "sync_conflict_reconciled",
            entity_type=entity_type,
            record_id=record_id,
            outcome=type(result).__name__,
            reason=result.reason,
        )
