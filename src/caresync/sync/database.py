"""Offline database connection and session management."""

import json
import threading
import zlib
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Generator, Optional, Tuple, Union

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from caresync.core.exceptions import StorageFailure
from caresync.models import Base, SyncMetadata
from caresync.utils.encryption import EncryptionService
from caresync.utils.logging import get_logger

logger = get_logger(__name__)

LOCK_STRIPES = 64


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class OfflineDatabase:
    """SQLite database backing the local record store and the sync queue.

    Writes to one `(entity_type, record_id)` are serialized through
    `record_lock`; different records may be written concurrently.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        encryption: Optional[EncryptionService] = None,
    ):
        """Initialize offline database.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
            encryption: Encrypts stored payloads when given
        """
        self.encryption = encryption

        if str(db_path) == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            self.db_path: Optional[Path] = None
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            event.listen(self.engine, "connect", self._configure_connection)

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._locks = [threading.RLock() for _ in range(LOCK_STRIPES)]

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageFailure(f"Failed to initialize offline database: {e}") from e

    @staticmethod
    def _configure_connection(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        # WAL lets readers iterate while the dispatcher writes
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Transactional scope; database errors surface as StorageFailure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("offline_storage_error", error=str(e))
            raise StorageFailure(f"Local write could not be committed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def record_lock(self, entity_type: str, record_id: str) -> threading.RLock:
        """Lock serializing writes to one record."""
        stripe = zlib.crc32(f"{entity_type}\x00{record_id}".encode()) % LOCK_STRIPES
        return self._locks[stripe]

    def encode_payload(self, payload: Optional[Dict[str, Any]]) -> Tuple[Optional[str], bool]:
        """Serialize (and encrypt when configured) a payload for storage."""
        if payload is None:
            return None, False
        try:
            data_str = json.dumps(payload, default=_json_default, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StorageFailure(f"Payload is not serializable: {e}") from e
        if self.encryption is not None:
            return self.encryption.encrypt(data_str), True
        return data_str, False

    def decode_payload(self, data_str: Optional[str], encrypted: bool) -> Optional[Dict[str, Any]]:
        """Inverse of encode_payload."""
        if data_str is None:
            return None
        if encrypted:
            if self.encryption is None:
                raise StorageFailure("Encrypted payload found but no encryption key is configured")
            data_str = self.encryption.decrypt(data_str)
        payload: Dict[str, Any] = json.loads(data_str)
        return payload

    def get_metadata(self, key: str) -> Optional[str]:
        """Read a sync metadata value."""
        with self.session_scope() as session:
            row = session.get(SyncMetadata, key)
            return row.value if row else None

    def set_metadata(self, key: str, value: Optional[str]) -> None:
        """Write a sync metadata value."""
        with self.session_scope() as session:
            row = session.get(SyncMetadata, key)
            if row is None:
                session.add(SyncMetadata(key=key, value=value))
            else:
                row.value = value

    def close(self) -> None:
        """Dispose of pooled connections."""
        self.engine.dispose()
