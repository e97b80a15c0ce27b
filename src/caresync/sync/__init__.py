"""Sync module for offline data synchronization."""

from .change_tracker import ChangeTracker
from .conflict_resolver import ConflictResolver, KeepLocal, KeepRemote, Merged
from .database import OfflineDatabase
from .dispatcher import DispatchReport, PushOutcome, PushTask, SyncDispatcher
from .offline_storage import LocalRecordStore
from .records import PushAck, Record, RemoteRecord, SupersededVersion, SyncJob
from .remote_client import RemoteAuthorityClient, RestRemoteClient
from .schema_mapping import SchemaMapping
from .sync_service import SyncService, SyncStatus, SyncStatusSnapshot

__all__ = [
    "ChangeTracker",
    "ConflictResolver",
    "DispatchReport",
    "KeepLocal",
    "KeepRemote",
    "LocalRecordStore",
    "Merged",
    "OfflineDatabase",
    "PushAck",
    "PushOutcome",
    "PushTask",
    "Record",
    "RemoteAuthorityClient",
    "RemoteRecord",
    "RestRemoteClient",
    "SchemaMapping",
    "SupersededVersion",
    "SyncDispatcher",
    "SyncJob",
    "SyncService",
    "SyncStatus",
    "SyncStatusSnapshot",
]
