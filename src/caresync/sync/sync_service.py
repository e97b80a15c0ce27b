"""Sync manager.

`SyncService` owns the local store, the change tracker, the dispatcher, the
conflict resolver and the remote client for one device. Nothing here is module
state: create one instance, `start()` it inside a running event loop, and
`stop()` it on shutdown.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from caresync.config import Settings, get_settings
from caresync.core.exceptions import AuthFailure, ConfigurationError, SyncFailure
from caresync.models import ConflictResolution, JobState, SyncState
from caresync.models.db_types import utcnow
from caresync.sync import metrics
from caresync.sync.change_tracker import ChangeTracker
from caresync.sync.conflict_resolver import ConflictResolver
from caresync.sync.database import OfflineDatabase
from caresync.sync.dispatcher import DispatchReport, SyncDispatcher
from caresync.sync.offline_storage import LocalRecordStore
from caresync.sync.records import Record, RemoteRecord, SupersededVersion, SyncJob
from caresync.sync.remote_client import RemoteAuthorityClient, RestRemoteClient
from caresync.sync.schema_mapping import SchemaMapping, parse_timestamp
from caresync.utils.encryption import EncryptionService
from caresync.utils.logging import bind_device, get_logger

logger = get_logger(__name__)

DEVICE_ID_KEY = "device_id"
WATERMARK_KEY = "pull_watermark:{entity_type}"


class SyncStatus(str, Enum):
    """Overall sync state reported to the UI."""

    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"
    SUCCESS = "success"
    UNAUTHORIZED = "unauthorized"


@dataclass
class SyncStatusSnapshot:
    """Aggregate sync status."""

    state: SyncStatus
    is_online: bool
    paused: bool
    pending: int
    needs_attention: int
    dead_lettered: int
    in_flight: int
    last_sync_at: Optional[datetime]
    last_error: Optional[str]
    device_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_online": self.is_online,
            "paused": self.paused,
            "pending": self.pending,
            "needs_attention": self.needs_attention,
            "dead_lettered": self.dead_lettered,
            "in_flight": self.in_flight,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error": self.last_error,
            "device_id": self.device_id,
        }


StatusListener = Callable[[SyncStatusSnapshot], None]


class SyncService:
    """Offline-first sync for one device."""

    def __init__(
        self,
        database: OfflineDatabase,
        client: RemoteAuthorityClient,
        entity_types: Sequence[str] = (),
        index_fields: Optional[Dict[str, List[str]]] = None,
        conflict_resolution: ConflictResolution = ConflictResolution.LAST_WRITE_WINS,
        interval_seconds: float = 30.0,
        batch_size: int = 50,
        fan_out: int = 4,
        max_attempts: int = 5,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0,
        pull_page_size: int = 500,
        tombstone_retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize sync service.

        Args:
            database: Offline database
            client: Remote authority client
            entity_types: Entity types pulled on every sync, in order
            index_fields: Secondary index fields per entity type
            conflict_resolution: Strategy for diverged records
            interval_seconds: Time between background syncs
            batch_size: Jobs pushed per dispatcher tick
            fan_out: Concurrent pushes
            max_attempts: Failed pushes before a job is dead-lettered
            backoff_base_seconds: Retry delay after the first failure
            backoff_max_seconds: Retry delay cap
            pull_page_size: Remote records requested per pull page
            tombstone_retention: How long synced tombstones are kept
            clock: Source of the current time
        """
        self.database = database
        self.client = client
        self.entity_types = list(entity_types)
        self.interval_seconds = interval_seconds
        self.pull_page_size = pull_page_size
        self.tombstone_retention = tombstone_retention
        self.clock = clock

        self.tracker = ChangeTracker(
            database,
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            backoff_max_seconds=backoff_max_seconds,
            clock=clock,
        )
        self.store = LocalRecordStore(database, self.tracker, index_fields, clock=clock)
        self.resolver = ConflictResolver(self.store, self.tracker, conflict_resolution)
        self.dispatcher = SyncDispatcher(
            self.store,
            self.tracker,
            client,
            self.resolver,
            batch_size=batch_size,
            fan_out=fan_out,
            clock=clock,
        )
        self.dispatcher.on_pause = self._on_pause

        self._state = SyncStatus.IDLE
        self._online = True
        self._last_sync_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._listeners: List[StatusListener] = []
        self._device_id: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._sync_lock: Optional[asyncio.Lock] = None
        self._stopping = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[RemoteAuthorityClient] = None,
    ) -> "SyncService":
        """Build a service from application settings."""
        settings = settings or get_settings()
        if client is None and not settings.remote_base_url:
            raise ConfigurationError("remote_base_url is required to sync")

        encryption = None
        if settings.encryption_key:
            encryption = EncryptionService(settings.encryption_key, settings.encryption_salt)
        database = OfflineDatabase(settings.offline_db_path, encryption=encryption)

        if client is None:
            client = RestRemoteClient(
                settings.remote_base_url,
                api_key=settings.remote_api_key or "",
                timeout_seconds=settings.remote_timeout_seconds,
                health_path=settings.remote_health_path,
                mapping=SchemaMapping(
                    settings.remote_table_overrides, settings.pull_cursor_fields
                ),
            )

        service = cls(
            database,
            client,
            entity_types=settings.sync_entity_types,
            index_fields=settings.index_fields,
            conflict_resolution=settings.conflict_resolution,
            interval_seconds=settings.sync_interval_seconds,
            batch_size=settings.sync_batch_size,
            fan_out=settings.sync_fan_out,
            max_attempts=settings.sync_max_attempts,
            backoff_base_seconds=settings.sync_backoff_base_seconds,
            backoff_max_seconds=settings.sync_backoff_max_seconds,
            pull_page_size=settings.pull_page_size,
            tombstone_retention=timedelta(hours=settings.tombstone_retention_hours),
        )
        if isinstance(client, RestRemoteClient):
            client.device_id = service.device_id
        return service

    # -- lifecycle -------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def device_id(self) -> str:
        """Stable identifier of this device, created on first use."""
        if self._device_id is None:
            device_id = self.database.get_metadata(DEVICE_ID_KEY)
            if device_id is None:
                device_id = f"device_{uuid.uuid4().hex}"
                self.database.set_metadata(DEVICE_ID_KEY, device_id)
            self._device_id = device_id
        return self._device_id

    def _ensure_primitives(self) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
        if self._sync_lock is None:
            self._sync_lock = asyncio.Lock()

    async def start(self) -> None:
        """Recover interrupted jobs and start the background sync loop."""
        if self.running:
            return
        self._ensure_primitives()
        self._loop = asyncio.get_running_loop()
        self._stopping = False

        bind_device(self.device_id)
        recovered = self.tracker.recover_in_flight()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "sync_service_started",
            device_id=self.device_id,
            recovered_jobs=recovered,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the loop after the current pass and release the client."""
        if self._task is not None:
            self._stopping = True
            if self._wake is not None:
                self._wake.set()
            await self._task
            self._task = None
        await self.client.close()
        self._set_state(SyncStatus.IDLE)
        logger.info("sync_service_stopped")

    async def _run_loop(self) -> None:
        assert self._wake is not None
        while not self._stopping:
            try:
                await self.sync_once()
            except Exception as e:
                self._last_error = str(e)
                self._set_state(SyncStatus.ERROR)
                logger.exception("sync_loop_error", error=str(e))

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def trigger(self) -> None:
        """Wake the background loop for an immediate sync."""
        if self._wake is None:
            return
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._wake.set)
        else:
            self._wake.set()

    # -- local writes ----------------------------------------------------

    def save(self, entity_type: str, record_id: str, payload: Dict[str, Any]) -> Record:
        """Write a record locally and schedule its push."""
        record = self.store.put(
            Record(entity_type=entity_type, id=record_id, payload=payload, updated_at=self.clock())
        )
        self.trigger()
        self._notify()
        return record

    def remove(self, entity_type: str, record_id: str) -> Record:
        """Delete a record locally and schedule the deletion's push."""
        tombstone = self.store.delete(entity_type, record_id)
        self.trigger()
        self._notify()
        return tombstone

    # -- sync passes -----------------------------------------------------

    async def sync_once(self) -> Dict[str, Any]:
        """Pull every configured entity type, push pending changes, purge tombstones."""
        self._ensure_primitives()
        assert self._sync_lock is not None
        summary: Dict[str, Any] = {"pulled": {}, "pushed": 0, "purged": 0, "errors": []}

        async with self._sync_lock:
            self._online = await self.client.is_online()
            if not self._online:
                self._set_state(SyncStatus.OFFLINE)
                return summary
            if self.dispatcher.paused:
                self._set_state(SyncStatus.UNAUTHORIZED)
                return summary

            self._set_state(SyncStatus.SYNCING)

            for entity_type in self.entity_types:
                try:
                    summary["pulled"][entity_type] = await self.pull(entity_type)
                except AuthFailure as e:
                    self.dispatcher.pause(e.message)
                    summary["errors"].append(e.message)
                    return summary
                except SyncFailure as e:
                    summary["errors"].append(f"{entity_type}: {e.message}")
                    logger.warning("sync_pull_failed", entity_type=entity_type, error=e.message)

            report: DispatchReport = await self.dispatcher.tick()
            summary["pushed"] = report.claimed
            if self.dispatcher.paused:
                return summary

            summary["purged"] = self.store.purge_tombstones(self.clock() - self.tombstone_retention)

            self._last_sync_at = self.clock()
            if summary["errors"]:
                self._last_error = summary["errors"][-1]
                self._set_state(SyncStatus.ERROR)
            else:
                self._last_error = None
                self._set_state(SyncStatus.SUCCESS)

        logger.info(
            "sync_completed",
            pulled=sum(summary["pulled"].values()),
            pushed=summary["pushed"],
            purged=summary["purged"],
            errors=len(summary["errors"]),
        )
        return summary

    def _get_watermark(self, entity_type: str) -> Optional[datetime]:
        value = self.database.get_metadata(WATERMARK_KEY.format(entity_type=entity_type))
        return parse_timestamp(value) if value else None

    def _set_watermark(self, entity_type: str, watermark: datetime) -> None:
        self.database.set_metadata(
            WATERMARK_KEY.format(entity_type=entity_type), watermark.isoformat()
        )

    @staticmethod
    def _already_synced(local: Optional[Record], remote: RemoteRecord) -> bool:
        # The remote row is the version this copy last synced with
        if local is None or local.remote_updated_at != remote.updated_at:
            return False
        if local.deleted != remote.deleted:
            return False
        return remote.deleted or local.base_payload == remote.payload

    async def pull(self, entity_type: str) -> int:
        """Reconcile remote changes since the stored watermark; returns records applied.

        Pages by (cursor, id). Each pass starts by re-reading rows stamped
        exactly at the watermark, so rows written later with the same
        timestamp are still seen; versions already synced are skipped.
        """
        since = self._get_watermark(entity_type)
        after_id: Optional[str] = None
        total = 0

        while True:
            page = await self.client.pull(
                entity_type, since, self.pull_page_size, after_id=after_id
            )
            position = (since, after_id)
            for remote in page:
                local = self.store.get(entity_type, remote.id, include_deleted=True)
                if not self._already_synced(local, remote):
                    result, _ = self.resolver.apply(remote)
                    metrics.sync_pulled_records_total.labels(
                        entity_type=entity_type, outcome=type(result).__name__
                    ).inc()
                    if result.superseded is not None:
                        metrics.sync_superseded_total.labels(entity_type=entity_type).inc()
                    total += 1
                since, after_id = remote.watermark, remote.id

            if page and since != position[0]:
                self._set_watermark(entity_type, since)
            if len(page) < self.pull_page_size or (since, after_id) == position:
                break

        if total:
            logger.info("sync_pulled", entity_type=entity_type, count=total)
        return total


    # -- connectivity and credentials -------------------------------------

    def notify_connectivity(self, online: bool) -> None:
        """Report a connectivity change observed by the host."""
        self._online = online
        if online:
            logger.info("sync_connectivity_restored")
            self.trigger()
            if self._state == SyncStatus.OFFLINE:
                self._set_state(SyncStatus.IDLE)
        else:
            logger.info("sync_connectivity_lost")
            self._set_state(SyncStatus.OFFLINE)

    def notify_remote_change(self, entity_type: str) -> None:
        """Report a change event pushed by the remote, e.g. from a realtime channel."""
        if entity_type not in self.entity_types:
            logger.debug("sync_remote_change_ignored", entity_type=entity_type)
            return
        logger.info("sync_remote_change", entity_type=entity_type)
        self.trigger()

    def _on_pause(self, reason: str) -> None:
        self._last_error = reason
        self._set_state(SyncStatus.UNAUTHORIZED)

    def pause(self, reason: str) -> None:
        """Suspend pushes, e.g. when credentials expired. Jobs are kept."""
        self.dispatcher.pause(reason)

    def resume(self, access_token: Optional[str] = None) -> None:
        """Resume after re-authentication, optionally with a new token."""
        if access_token is not None:
            self.client.set_access_token(access_token)
        self.dispatcher.resume()
        self._last_error = None
        self._set_state(SyncStatus.IDLE)
        self.trigger()

    # -- status ----------------------------------------------------------

    def status(self) -> SyncStatusSnapshot:
        """Aggregate sync status."""
        record_states = self.store.count_by_state()
        job_states = self.tracker.counts()
        return SyncStatusSnapshot(
            state=self._state,
            is_online=self._online,
            paused=self.dispatcher.paused,
            pending=record_states[SyncState.PENDING.value],
            needs_attention=record_states[SyncState.CONFLICT.value]
            + record_states[SyncState.FAILED.value],
            dead_lettered=job_states[JobState.DEAD_LETTERED.value],
            in_flight=job_states[JobState.IN_FLIGHT.value],
            last_sync_at=self._last_sync_at,
            last_error=self._last_error,
            device_id=self.device_id,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Receive status snapshots on changes; returns an unsubscribe callable."""
        self._listeners.append(listener)
        self._call(listener, self.status())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _call(listener: StatusListener, snapshot: SyncStatusSnapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("sync_listener_error")

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            self._call(listener, snapshot)

    def _set_state(self, state: SyncStatus) -> None:
        self._state = state
        self._notify()

    # -- operator surface --------------------------------------------------

    def dead_letters(self) -> List[SyncJob]:
        return self.tracker.list_jobs(JobState.DEAD_LETTERED)

    def conflicts(self) -> List[SyncJob]:
        return self.tracker.list_jobs(JobState.CONFLICT)

    def superseded(
        self, entity_type: Optional[str] = None, include_acknowledged: bool = False
    ) -> List[SupersededVersion]:
        return self.store.list_superseded(entity_type, include_acknowledged=include_acknowledged)

    def acknowledge_superseded(self, superseded_id: int) -> SupersededVersion:
        return self.store.acknowledge_superseded(superseded_id)

    def retry(self, entity_type: str, record_id: str) -> SyncJob:
        """Operator retry of a dead-lettered or rejected record."""
        job = self.tracker.requeue(entity_type, record_id)
        self.trigger()
        self._notify()
        return job

    def diagnostics(self) -> Dict[str, Any]:
        """Everything an operator needs to see what is stuck and why."""
        return {
            "status": self.status().to_dict(),
            "jobs": self.tracker.counts(),
            "dead_letters": [job.to_dict() for job in self.dead_letters()],
            "conflicts": [job.to_dict() for job in self.conflicts()],
            "superseded": [version.to_dict() for version in self.superseded()],
            "recent_pushes": [task.to_dict() for task in self.dispatcher.history],
            "pause_reason": self.dispatcher.pause_reason,
            "storage": self.store.storage_info(),
        }
