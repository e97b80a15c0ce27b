"""Test configuration for CareSync.

Every test gets its own SQLite file under pytest's tmp_path, a controllable
clock and an in-memory remote authority.
"""

import os
from datetime import datetime, timezone

import pytest

# Set testing environment BEFORE any other imports
os.environ.setdefault("ENVIRONMENT", "testing")

from caresync.sync.change_tracker import ChangeTracker  # noqa: E402
from caresync.sync.database import OfflineDatabase  # noqa: E402
from caresync.sync.offline_storage import LocalRecordStore  # noqa: E402
from caresync.sync.sync_service import SyncService  # noqa: E402
from tests.mocks.remote import FakeClock, ScriptedRemote  # noqa: E402

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

INDEX_FIELDS = {"admissions": ["patientId", "ward"]}


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "phi_encryption: mark test as covering encryption at rest")


@pytest.fixture
def clock():
    """Clock starting at a fixed instant."""
    return FakeClock(T0)


@pytest.fixture
def database(tmp_path):
    """Fresh offline database file."""
    db = OfflineDatabase(tmp_path / "offline_data.db")
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def tracker(database, clock):
    """Change tracker with a short retry budget."""
    return ChangeTracker(
        database,
        max_attempts=3,
        backoff_base_seconds=2,
        backoff_max_seconds=60,
        clock=clock,
    )


@pytest.fixture
def store(database, tracker, clock):
    """Local record store indexing admissions by patient and ward."""
    return LocalRecordStore(database, tracker, INDEX_FIELDS, clock=clock)


@pytest.fixture
def remote():
    """In-memory remote authority."""
    return ScriptedRemote()


@pytest.fixture
def service(database, remote, clock):
    """Sync service wired to the in-memory remote."""
    return SyncService(
        database,
        remote,
        entity_types=["patients", "admissions"],
        index_fields=INDEX_FIELDS,
        max_attempts=3,
        backoff_base_seconds=2,
        backoff_max_seconds=60,
        pull_page_size=2,
        clock=clock,
    )
