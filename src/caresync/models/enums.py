"""Enumerations shared by the offline store and the sync engine."""

import enum


class SyncState(enum.Enum):
    """Synchronization state of a local record."""

    CLEAN = "clean"
    PENDING = "pending"
    CONFLICT = "conflict"
    FAILED = "failed"


class JobState(enum.Enum):
    """Lifecycle of a sync job.

    created -> in_flight -> {removed (clean) | backoff -> created | conflict | dead_lettered}
    """

    CREATED = "created"
    IN_FLIGHT = "in_flight"
    BACKOFF = "backoff"
    CONFLICT = "conflict"
    DEAD_LETTERED = "dead_lettered"


class ConflictResolution(enum.Enum):
    """Conflict resolution strategies."""

    LAST_WRITE_WINS = "last_write_wins"
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"
    MANUAL = "manual"


class RecordSide(enum.Enum):
    """Which copy of a record a version came from."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"
