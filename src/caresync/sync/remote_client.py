"""Remote authority client.

The dispatcher and the sync service only depend on `RemoteAuthorityClient`.
`RestRemoteClient` talks to a PostgREST-style table API over aiohttp. Clients
never retry internally; every failure is reported as one of the
`SyncFailure` categories and the dispatcher decides what to do with it.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from caresync.core.exceptions import (
    AuthFailure,
    RejectedSyncFailure,
    SyncFailure,
    TransientSyncFailure,
)
from caresync.sync.records import PushAck, Record, RemoteRecord
from caresync.sync.schema_mapping import SchemaMapping, parse_timestamp, sanitize_value
from caresync.utils.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUSES = {408, 425, 429}
AUTH_STATUSES = {401, 403}

# Columns carried outside the payload
ID_COLUMN = "id"
UPDATED_AT_COLUMN = "updated_at"
DELETED_COLUMN = "deleted"


class RemoteAuthorityClient(ABC):
    """Contract for the remote system of record."""

    @abstractmethod
    async def push(self, entity_type: str, record: Record) -> PushAck:
        """Upsert the record (or its tombstone) on the remote."""

    @abstractmethod
    async def pull(
        self,
        entity_type: str,
        since: Optional[datetime],
        limit: int,
        after_id: Optional[str] = None,
    ) -> List[RemoteRecord]:
        """Records at or after `since`, ascending by (pull cursor, id).

        With `after_id`, rows stamped exactly at `since` are limited to ids
        after it.
        """

    @abstractmethod
    async def fetch(self, entity_type: str, record_id: str) -> Optional[RemoteRecord]:
        """Current remote version of one record, or None."""

    @abstractmethod
    async def is_online(self) -> bool:
        """Connectivity probe."""

    def set_access_token(self, access_token: Optional[str]) -> None:
        """Use new credentials after re-authentication."""

    async def close(self) -> None:
        """Release transport resources."""


def classify_status(status: int, body: str, details: Optional[Dict[str, Any]] = None) -> SyncFailure:
    """Map an unsuccessful HTTP status to a sync failure category."""
    message = f"Remote returned {status}: {body[:200]}"
    if status in AUTH_STATUSES:
        return AuthFailure(message, status=status)
    if status == 409:
        return RejectedSyncFailure(message, status=status, conflict=True, details=details)
    if status in TRANSIENT_STATUSES or status >= 500:
        return TransientSyncFailure(message, status=status)
    return RejectedSyncFailure(message, status=status, details=details)


class RestRemoteClient(RemoteAuthorityClient):
    """Table API client: `/rest/v1/<table>` with upsert on `id`."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        access_token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        health_path: str = "/rest/v1/",
        mapping: Optional[SchemaMapping] = None,
        device_id: Optional[str] = None,
    ):
        """Initialize REST client.

        Args:
            base_url: Remote base URL
            api_key: Project API key, sent as `apikey`
            access_token: Bearer token; defaults to the API key
            timeout_seconds: Total timeout per request
            health_path: Path probed by `is_online`
            mapping: Entity type / field translation
            device_id: Sent as `X-Device-ID` for remote audit
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.health_path = health_path
        self.mapping = mapping or SchemaMapping()
        self.device_id = device_id
        self._session: Optional[aiohttp.ClientSession] = None

    def set_access_token(self, access_token: Optional[str]) -> None:
        """Use new credentials after re-authentication."""
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.device_id:
            headers["X-Device-ID"] = self.device_id
        return headers

    def _table_url(self, entity_type: str) -> str:
        return f"{self.base_url}/rest/v1/{self.mapping.table_name(entity_type)}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        session = await self._get_session()
        request_headers = self._headers()
        request_headers.update(headers or {})
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=request_headers,
            ) as response:
                if response.status in (200, 201):
                    return await response.json(content_type=None)
                if response.status == 204:
                    return None

                body = await response.text()
                details = None
                if response.content_type == "application/json":
                    try:
                        details = await response.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        details = None
                raise classify_status(response.status, body, details)
        except asyncio.TimeoutError as e:
            raise TransientSyncFailure("Request timeout") from e
        except aiohttp.ClientError as e:
            raise TransientSyncFailure(f"Network error: {e}") from e
        except ValueError as e:
            raise TransientSyncFailure(f"Malformed response from remote: {e}") from e

    def _to_row(self, record: Record) -> Dict[str, Any]:
        row = {} if record.deleted else self.mapping.to_remote(record.payload)
        row[ID_COLUMN] = record.id
        row[UPDATED_AT_COLUMN] = sanitize_value(record.updated_at)
        row[DELETED_COLUMN] = record.deleted
        return row

    def _from_row(self, entity_type: str, row: Dict[str, Any]) -> RemoteRecord:
        cursor = self.mapping.cursor_field(entity_type)
        try:
            updated_at = parse_timestamp(row.get(UPDATED_AT_COLUMN) or row.get(cursor))
            cursor_value = (
                parse_timestamp(row.get(cursor)) if cursor != UPDATED_AT_COLUMN else None
            )
        except (TypeError, ValueError) as e:
            raise RejectedSyncFailure(
                f"Remote {entity_type} row {row.get(ID_COLUMN)} has a malformed timestamp: {e}"
            ) from e
        if updated_at is None:
            raise RejectedSyncFailure(f"Remote {entity_type} row has no timestamp")

        payload_row = {
            k: v
            for k, v in row.items()
            if k not in (ID_COLUMN, UPDATED_AT_COLUMN, DELETED_COLUMN)
        }
        return RemoteRecord(
            entity_type=entity_type,
            id=str(row[ID_COLUMN]),
            payload=self.mapping.from_remote(payload_row),
            updated_at=updated_at,
            deleted=bool(row.get(DELETED_COLUMN)),
            cursor_value=cursor_value,
        )

    async def push(self, entity_type: str, record: Record) -> PushAck:
        headers = {
            "Prefer": "resolution=merge-duplicates,return=representation",
            "X-Sync-Revision": str(record.local_revision),
        }
        if record.remote_updated_at is not None:
            headers["X-Sync-Base-Updated-At"] = record.remote_updated_at.isoformat()

        result = await self._request(
            "POST",
            self._table_url(entity_type),
            params={"on_conflict": ID_COLUMN},
            json_body=[self._to_row(record)],
            headers=headers,
        )

        remote_updated_at = None
        if isinstance(result, list) and result:
            try:
                remote_updated_at = parse_timestamp(result[0].get(UPDATED_AT_COLUMN))
            except (TypeError, ValueError) as e:
                # The upsert was accepted; fall back to the pushed timestamp
                logger.warning(
                    "sync_malformed_ack_timestamp",
                    entity_type=entity_type,
                    record_id=record.id,
                    error=str(e),
                )
        logger.debug(
            "sync_remote_upsert",
            entity_type=entity_type,
            record_id=record.id,
            revision=record.local_revision,
        )
        return PushAck(revision=record.local_revision, remote_updated_at=remote_updated_at)

    async def pull(
        self,
        entity_type: str,
        since: Optional[datetime],
        limit: int,
        after_id: Optional[str] = None,
    ) -> List[RemoteRecord]:
        cursor = self.mapping.cursor_field(entity_type)
        params = {
            "select": "*",
            "order": f"{cursor}.asc,{ID_COLUMN}.asc",
            "limit": str(limit),
        }
        if since is not None:
            stamp = sanitize_value(since)
            if after_id is None:
                params[cursor] = f"gte.{stamp}"
            else:
                params["or"] = (
                    f'({cursor}.gt."{stamp}",'
                    f'and({cursor}.eq."{stamp}",{ID_COLUMN}.gt."{after_id}"))'
                )

        result = await self._request("GET", self._table_url(entity_type), params=params)
        return [self._from_row(entity_type, row) for row in result or []]

    async def fetch(self, entity_type: str, record_id: str) -> Optional[RemoteRecord]:
        params = {"select": "*", ID_COLUMN: f"eq.{record_id}", "limit": "1"}
        result = await self._request("GET", self._table_url(entity_type), params=params)
        if not result:
            return None
        return self._from_row(entity_type, result[0])

    async def is_online(self) -> bool:
        try:
            session = await self._get_session()
            async with session.get(
                f"{self.base_url}{self.health_path}", headers=self._headers()
            ) as response:
                return response.status < 500
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.debug("sync_remote_unreachable", error=str(e))
            return False
