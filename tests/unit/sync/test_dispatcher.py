"""Test suite for the sync dispatcher."""

import asyncio
from datetime import timedelta

import pytest

from caresync.core.exceptions import RejectedSyncFailure, TransientSyncFailure
from caresync.models import JobState, RecordSide, SyncState
from caresync.sync.conflict_resolver import ConflictResolver
from caresync.sync.dispatcher import PushOutcome, SyncDispatcher
from caresync.sync.records import Record
from tests.mocks.remote import ScriptedRemote


@pytest.fixture
def dispatcher(store, tracker, remote, clock):
    return SyncDispatcher(
        store,
        tracker,
        remote,
        ConflictResolver(store, tracker),
        batch_size=10,
        fan_out=2,
        clock=clock,
    )


def write(store, record_id="pat-1", **payload):
    return store.put(Record(entity_type="patients", id=record_id, payload=payload))


class TestSuccessfulPush:
    """Happy path."""

    @pytest.mark.asyncio
    async def test_push_cleans_record(self, dispatcher, store, tracker, remote):
        write(store, name="Ada")

        report = await dispatcher.tick()

        assert report.count(PushOutcome.SUCCEEDED) == 1
        assert remote.get_remote("patients", "pat-1").payload == {"name": "Ada"}
        record = store.get("patients", "pat-1")
        assert record.sync_state == SyncState.CLEAN
        assert record.synced_revision == 1
        assert tracker.list_jobs() == []

    @pytest.mark.asyncio
    async def test_tombstone_is_pushed_as_soft_delete(self, dispatcher, store, remote):
        write(store, name="Ada")
        await dispatcher.tick()
        store.delete("patients", "pat-1")

        await dispatcher.tick()

        assert remote.get_remote("patients", "pat-1").deleted
        assert store.get("patients", "pat-1", include_deleted=True).sync_state == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_pushes_in_fifo_order(self, store, tracker, remote, clock):
        dispatcher = SyncDispatcher(
            store, tracker, remote, ConflictResolver(store, tracker), fan_out=1, clock=clock
        )
        for record_id in ["c", "a", "b"]:
            write(store, record_id)

        await dispatcher.tick()

        assert [push[1] for push in remote.pushes] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_pushes_latest_state_only(self, dispatcher, store, remote):
        """Several offline edits are sent once, as the latest revision."""
        for n in range(4):
            write(store, name=f"v{n}")

        await dispatcher.tick()

        assert remote.pushes == [("patients", "pat-1", 4)]
        assert remote.get_remote("patients", "pat-1").payload == {"name": "v3"}

    @pytest.mark.asyncio
    async def test_history_records_outcomes(self, dispatcher, store):
        write(store)
        await dispatcher.tick()

        assert [task.outcome for task in dispatcher.history] == [PushOutcome.SUCCEEDED]
        assert dispatcher.history[0].to_dict()["revision"] == 1


class TestNoLostUpdates:
    """Local writes racing with pushes."""

    @pytest.mark.asyncio
    async def test_edit_during_push_is_sent_next(self, dispatcher, store, remote):
        write(store, name="first")

        def edit_once(entity_type, record):
            if record.local_revision == 1:
                write(store, name="second")

        remote.on_push = edit_once
        report = await dispatcher.tick()

        assert report.count(PushOutcome.REQUEUED) == 1
        record = store.get("patients", "pat-1")
        assert record.sync_state == SyncState.PENDING
        assert record.payload == {"name": "second"}

        await dispatcher.tick()
        assert remote.get_remote("patients", "pat-1").payload == {"name": "second"}
        assert store.get("patients", "pat-1").sync_state == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_delete_during_push_is_not_undone(self, dispatcher, store, remote):
        write(store, name="Ada")
        remote.on_push = lambda entity_type, record: (
            store.delete("patients", "pat-1") if not record.deleted else None
        )

        await dispatcher.tick()
        tombstone = store.get("patients", "pat-1", include_deleted=True)
        assert tombstone.deleted
        assert tombstone.sync_state == SyncState.PENDING

        await dispatcher.tick()
        assert remote.get_remote("patients", "pat-1").deleted


class TestFailures:
    """Retry, rejection and pause paths."""

    @pytest.mark.asyncio
    async def test_transient_failure_retries_with_backoff(self, dispatcher, store, tracker, remote, clock):
        write(store)
        remote.fail_next("patients", "pat-1", TransientSyncFailure("503", status=503))

        report = await dispatcher.tick()
        assert report.count(PushOutcome.RETRY_SCHEDULED) == 1
        job = tracker.get_job("patients", "pat-1")
        assert job.state == JobState.BACKOFF
        assert job.next_attempt_at == clock.now + timedelta(seconds=2)

        assert (await dispatcher.tick()).claimed == 0

        clock.advance(2)
        report = await dispatcher.tick()
        assert report.count(PushOutcome.SUCCEEDED) == 1

    @pytest.mark.asyncio
    async def test_dead_letter_after_retry_budget(self, dispatcher, store, tracker, remote, clock):
        write(store)
        remote.fail_next(
            "patients", "pat-1", *[TransientSyncFailure("timeout") for _ in range(3)]
        )

        outcomes = []
        for _ in range(3):
            report = await dispatcher.tick()
            outcomes.extend(task.outcome for task in report.tasks)
            clock.advance(600)

        assert outcomes == [
            PushOutcome.RETRY_SCHEDULED,
            PushOutcome.RETRY_SCHEDULED,
            PushOutcome.DEAD_LETTERED,
        ]
        assert tracker.get_job("patients", "pat-1").state == JobState.DEAD_LETTERED
        assert store.get("patients", "pat-1").sync_state == SyncState.FAILED
        assert (await dispatcher.tick()).claimed == 0

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, dispatcher, store, tracker, remote, clock):
        write(store)
        remote.fail_next("patients", "pat-1", RejectedSyncFailure("422 invalid", status=422))

        report = await dispatcher.tick()

        assert report.count(PushOutcome.CONFLICT) == 1
        assert tracker.get_job("patients", "pat-1").state == JobState.CONFLICT
        clock.advance(3600)
        assert (await dispatcher.tick()).claimed == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off_instead_of_sticking(
        self, dispatcher, store, tracker, remote, clock
    ):
        write(store, name="Ada")
        remote.fail_next("patients", "pat-1", ValueError("Invalid isoformat string: 'not-a-date'"))

        report = await dispatcher.tick()

        assert report.count(PushOutcome.RETRY_SCHEDULED) == 1
        assert "ValueError" in report.tasks[0].error
        job = tracker.get_job("patients", "pat-1")
        assert job.state == JobState.BACKOFF
        assert job.attempt_count == 1
        assert dispatcher.in_flight == 0

        clock.advance(3600)
        report = await dispatcher.tick()
        assert report.count(PushOutcome.SUCCEEDED) == 1
        assert store.get("patients", "pat-1").sync_state == SyncState.CLEAN

    @pytest.mark.asyncio
    async def test_auth_failure_pauses_and_keeps_job(self, dispatcher, store, tracker, remote):
        write(store)
        remote.auth_valid = False

        report = await dispatcher.tick()

        assert report.count(PushOutcome.PAUSED) == 1
        assert dispatcher.paused
        job = tracker.get_job("patients", "pat-1")
        assert job.state == JobState.CREATED
        assert job.attempt_count == 0
        assert (await dispatcher.tick()).skipped_reason == "paused"

        remote.set_access_token("fresh")
        dispatcher.resume()
        report = await dispatcher.tick()
        assert report.count(PushOutcome.SUCCEEDED) == 1

    @pytest.mark.asyncio
    async def test_offline_tick_is_noop(self, dispatcher, store, tracker, remote):
        write(store)
        remote.online = False

        report = await dispatcher.tick()

        assert report.skipped_reason == "offline"
        assert remote.pushes == []
        assert tracker.get_job("patients", "pat-1").state == JobState.CREATED


class TestVersionConflict:
    """409 responses are reconciled, not retried blindly."""

    @pytest.mark.asyncio
    async def test_newer_remote_replaces_local(self, dispatcher, store, tracker, remote, clock):
        write(store, name="offline edit")
        remote.put_remote("patients", "pat-1", {"name": "other device"}, clock.now + timedelta(seconds=5))

        report = await dispatcher.tick()

        assert report.count(PushOutcome.RECONCILED) == 1
        record = store.get("patients", "pat-1")
        assert record.payload == {"name": "other device"}
        assert record.sync_state == SyncState.CLEAN
        assert tracker.get_job("patients", "pat-1") is None
        superseded = store.list_superseded()
        assert superseded[0].payload == {"name": "offline edit"}
        assert superseded[0].source == RecordSide.LOCAL

    @pytest.mark.asyncio
    async def test_newer_local_is_resent(self, dispatcher, store, tracker, remote, clock):
        remote.put_remote("patients", "pat-1", {"name": "other device"}, clock.now - timedelta(seconds=5))
        write(store, name="offline edit")

        report = await dispatcher.tick()
        assert report.count(PushOutcome.RECONCILED) == 1
        assert store.get("patients", "pat-1").sync_state == SyncState.PENDING

        clock.advance(2)
        report = await dispatcher.tick()
        assert report.count(PushOutcome.SUCCEEDED) == 1
        assert remote.get_remote("patients", "pat-1").payload == {"name": "offline edit"}
        assert store.list_superseded()[0].payload == {"name": "other device"}


class ConcurrencyRemote(ScriptedRemote):
    def __init__(self):
        super().__init__()
        self.current = 0
        self.peak = 0

    async def push(self, entity_type, record):
        self.current += 1
        self.peak = max(self.peak, self.current)
        await asyncio.sleep(0.01)
        self.current -= 1
        return await super().push(entity_type, record)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, tracker, clock):
        remote = ConcurrencyRemote()
        dispatcher = SyncDispatcher(
            store, tracker, remote, ConflictResolver(store, tracker), fan_out=3, clock=clock
        )
        for n in range(10):
            write(store, f"pat-{n}")

        report = await dispatcher.tick()

        assert report.count(PushOutcome.SUCCEEDED) == 10
        assert 1 < remote.peak <= 3
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_overlapping_ticks_push_each_record_once(self, store, tracker, clock):
        remote = ConcurrencyRemote()
        dispatcher = SyncDispatcher(
            store, tracker, remote, ConflictResolver(store, tracker), fan_out=3, clock=clock
        )
        for n in range(4):
            write(store, f"pat-{n}")

        first, second = await asyncio.gather(dispatcher.tick(), dispatcher.tick())

        assert first.claimed + second.claimed == 4
        assert sorted(push[1] for push in remote.pushes) == ["pat-0", "pat-1", "pat-2", "pat-3"]
