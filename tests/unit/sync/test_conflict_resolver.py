"""Test suite for reconciliation of local and remote versions."""

from datetime import timedelta

import pytest

from caresync.models import ConflictResolution, JobState, RecordSide, SyncState
from caresync.sync.conflict_resolver import ConflictResolver, KeepLocal, KeepRemote, Merged
from caresync.sync.records import Record, RemoteRecord


@pytest.fixture
def resolver(store, tracker):
    return ConflictResolver(store, tracker)


def synced(store, tracker, clock, **payload):
    """A patient record already acknowledged by the remote at clock.now."""
    record = store.put(Record(entity_type="patients", id="pat-1", payload=payload))
    tracker.mark_clean("patients", "pat-1", record.local_revision, clock.now, payload)
    return store.get("patients", "pat-1")


def remote_version(clock, offset_seconds=0, deleted=False, **payload):
    return RemoteRecord(
        entity_type="patients",
        id="pat-1",
        payload=payload,
        updated_at=clock.now + timedelta(seconds=offset_seconds),
        deleted=deleted,
    )


class TestWithoutDivergence:
    """Only one side changed."""

    def test_new_remote_record_is_stored_clean(self, resolver, store, clock):
        result, stored = resolver.apply(remote_version(clock, name="Ada"))

        assert isinstance(result, KeepRemote)
        assert stored.payload == {"name": "Ada"}
        assert stored.sync_state == SyncState.CLEAN
        assert stored.synced_revision == stored.local_revision == 1
        assert store.tracker.get_job("patients", "pat-1") is None

    def test_newer_remote_replaces_clean_local(self, resolver, store, tracker, clock):
        local = synced(store, tracker, clock, name="Ada")

        result, stored = resolver.apply(remote_version(clock, 60, name="Ada King"))

        assert isinstance(result, KeepRemote)
        assert stored.payload == {"name": "Ada King"}
        assert stored.local_revision == local.local_revision + 1
        assert stored.sync_state == SyncState.CLEAN
        assert store.list_superseded() == []

    def test_older_remote_leaves_clean_local(self, resolver, store, tracker, clock):
        local = synced(store, tracker, clock, name="Ada")

        result, stored = resolver.apply(remote_version(clock, -60, name="Old"))

        assert isinstance(result, KeepLocal)
        assert stored.local_revision == local.local_revision
        assert stored.payload == {"name": "Ada"}

    def test_unsynced_edit_kept_when_remote_unchanged(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(30)
        store.put(Record(entity_type="patients", id="pat-1", payload={"name": "Ada L"}))

        # Same version the local copy is based on
        result, stored = resolver.apply(remote_version(clock, -30, name="Ada"))

        assert isinstance(result, KeepLocal)
        assert stored.payload == {"name": "Ada L"}
        assert stored.sync_state == SyncState.PENDING
        assert store.list_superseded() == []


class TestLastWriteWins:
    """Default strategy on diverged records."""

    def test_newer_remote_wins_and_local_is_superseded(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        store.put(Record(entity_type="patients", id="pat-1", payload={"name": "local edit"}))

        result, stored = resolver.apply(remote_version(clock, 20, name="remote edit"))

        assert isinstance(result, KeepRemote)
        assert stored.payload == {"name": "remote edit"}
        assert stored.sync_state == SyncState.CLEAN

        superseded = store.list_superseded("patients")
        assert len(superseded) == 1
        assert superseded[0].payload == {"name": "local edit"}
        assert superseded[0].source == RecordSide.LOCAL
        assert superseded[0].winner == RecordSide.REMOTE

    def test_tie_goes_to_local_edit(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        local = store.put(Record(entity_type="patients", id="pat-1", payload={"name": "local"}))

        result, stored = resolver.apply(remote_version(clock, 0, name="remote"))

        assert isinstance(result, KeepLocal)
        assert stored.payload == {"name": "local"}
        assert stored.sync_state == SyncState.PENDING
        assert store.list_superseded()[0].payload == {"name": "remote"}

        # Baseline advanced so the next push is based on the remote version
        after = store.get("patients", "pat-1")
        assert after.remote_updated_at == clock.now
        assert after.local_revision == local.local_revision

    def test_never_synced_record_counts_as_diverged(self, resolver, store, clock):
        store.put(Record(entity_type="patients", id="pat-1", payload={"name": "offline"}))

        result, _ = resolver.apply(remote_version(clock, -5, name="server"))

        assert isinstance(result, KeepLocal)
        assert result.diverged
        assert store.list_superseded()[0].source == RecordSide.REMOTE


class TestTombstones:
    """Deletions against concurrent updates."""

    def test_local_deletion_beats_older_remote_update(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        store.delete("patients", "pat-1")

        result, stored = resolver.apply(remote_version(clock, -5, name="edited"))

        assert isinstance(result, KeepLocal)
        assert stored.deleted

    def test_local_deletion_wins_tie(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        store.delete("patients", "pat-1")

        result, stored = resolver.apply(remote_version(clock, 0, name="edited"))

        assert isinstance(result, KeepLocal)
        assert stored.deleted

    def test_newer_remote_update_beats_local_deletion(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        store.delete("patients", "pat-1")

        result, stored = resolver.apply(remote_version(clock, 5, name="edited later"))

        assert isinstance(result, KeepRemote)
        assert not stored.deleted
        assert stored.payload == {"name": "edited later"}
        superseded = store.list_superseded()[0]
        assert superseded.deleted
        assert superseded.source == RecordSide.LOCAL

    def test_remote_deletion_beats_older_local_update(self, resolver, store, tracker, clock):
        synced(store, tracker, clock, name="Ada")
        clock.advance(10)
        store.put(Record(entity_type="patients", id="pat-1", payload={"name": "edit"}))

        result, stored = resolver.apply(remote_version(clock, 5, deleted=True))

        assert isinstance(result, KeepRemote)
        assert stored.deleted
        assert stored.sync_state == SyncState.CLEAN
        assert store.list_superseded()[0].payload == {"name": "edit"}


class TestOtherStrategies:
    """Configurable strategies."""

    def diverge(self, store, tracker, clock, local_payload, **base):
        synced(store, tracker, clock, **base)
        clock.advance(10)
        store.put(Record(entity_type="patients", id="pat-1", payload=local_payload))

    def test_merge_combines_disjoint_changes(self, store, tracker, clock):
        resolver = ConflictResolver(store, tracker, ConflictResolution.MERGE)
        self.diverge(store, tracker, clock, {"name": "Ada", "ward": "B", "bed": 1}, name="Ada", ward="A", bed=1)

        result, stored = resolver.apply(remote_version(clock, 5, name="Ada", ward="A", bed=7))

        assert isinstance(result, Merged)
        assert stored.payload == {"name": "Ada", "ward": "B", "bed": 7}
        assert stored.sync_state == SyncState.PENDING
        assert result.superseded is None
        assert store.list_superseded() == []

    def test_merge_conflicting_field_goes_to_newer_side(self, store, tracker, clock):
        resolver = ConflictResolver(store, tracker, ConflictResolution.MERGE)
        self.diverge(store, tracker, clock, {"name": "Ada", "ward": "B"}, name="Ada", ward="A")

        result, stored = resolver.apply(remote_version(clock, 5, name="Ada K", ward="C"))

        assert isinstance(result, KeepRemote)
        assert stored.payload == {"name": "Ada K", "ward": "C"}
        assert store.list_superseded()[0].payload == {"name": "Ada", "ward": "B"}

    def test_server_wins(self, store, tracker, clock):
        resolver = ConflictResolver(store, tracker, ConflictResolution.SERVER_WINS)
        self.diverge(store, tracker, clock, {"name": "local"}, name="Ada")

        result, stored = resolver.apply(remote_version(clock, -5, name="server"))

        assert isinstance(result, KeepRemote)
        assert stored.payload == {"name": "server"}
        # Canonical timestamp is the later of the two, so it is pushed again
        assert stored.updated_at == clock.now
        assert stored.sync_state == SyncState.PENDING

    def test_client_wins(self, store, tracker, clock):
        resolver = ConflictResolver(store, tracker, ConflictResolution.CLIENT_WINS)
        self.diverge(store, tracker, clock, {"name": "local"}, name="Ada")

        result, stored = resolver.apply(remote_version(clock, 60, name="server"))

        assert isinstance(result, KeepLocal)
        assert stored.payload == {"name": "local"}
        assert stored.updated_at == clock.now + timedelta(seconds=60)

    def test_manual_flags_record_for_review(self, store, tracker, clock):
        resolver = ConflictResolver(store, tracker, ConflictResolution.MANUAL)
        self.diverge(store, tracker, clock, {"name": "local"}, name="Ada")

        result, _ = resolver.apply(remote_version(clock, 60, name="server"))

        assert isinstance(result, KeepLocal)
        assert result.manual
        assert store.get("patients", "pat-1").sync_state == SyncState.CONFLICT
        assert tracker.get_job("patients", "pat-1").state == JobState.CONFLICT
        assert store.list_superseded()[0].payload == {"name": "server"}
