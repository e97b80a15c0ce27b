"""Tests for the REST remote client against a local table API."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from caresync.core.exceptions import AuthFailure, RejectedSyncFailure, TransientSyncFailure
from caresync.sync.records import Record
from caresync.sync.remote_client import RestRemoteClient, classify_status
from caresync.sync.schema_mapping import SchemaMapping

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def table_app(responses=None):
    """Minimal table API recording every request it receives."""
    app = web.Application()
    app["requests"] = []
    app["responses"] = responses or {}

    async def handle(request):
        body = await request.json() if request.can_read_body else None
        request.app["requests"].append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": dict(request.headers),
                "body": body,
            }
        )
        status, payload = request.app["responses"].get(
            (request.method, request.path), (200, [])
        )
        if payload is None:
            return web.Response(status=status)
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    app.router.add_route("*", "/rest/v1/{table}", handle)
    app.router.add_route("*", "/rest/v1/", handle)
    return app


@asynccontextmanager
async def serve(app, **client_kwargs):
    server = TestServer(app)
    await server.start_server()
    client = RestRemoteClient(str(server.make_url("")), **client_kwargs)
    try:
        yield client
    finally:
        await client.close()
        await server.close()


def patient(**overrides):
    values = dict(
        entity_type="vitalSigns",
        id="vs-1",
        payload={"patientId": "pat-1", "heartRate": 80},
        updated_at=T0,
        local_revision=3,
    )
    values.update(overrides)
    return Record(**values)


@pytest.mark.parametrize(
    "status,expected",
    [
        (401, AuthFailure),
        (403, AuthFailure),
        (408, TransientSyncFailure),
        (429, TransientSyncFailure),
        (500, TransientSyncFailure),
        (503, TransientSyncFailure),
        (400, RejectedSyncFailure),
        (422, RejectedSyncFailure),
    ],
)
def test_classify_status(status, expected):
    assert type(classify_status(status, "body")) is expected


def test_conflict_status_is_flagged():
    failure = classify_status(409, "duplicate", {"code": "23505"})
    assert isinstance(failure, RejectedSyncFailure)
    assert failure.conflict
    assert failure.details == {"code": "23505"}


class TestPush:
    @pytest.mark.asyncio
    async def test_upsert_request(self):
        app = table_app(
            {("POST", "/rest/v1/vital_signs"): (201, [{"id": "vs-1", "updated_at": "2024-03-01T08:00:01Z"}])}
        )
        async with serve(app, api_key="anon", access_token="user-jwt", device_id="device_1") as client:
            record = patient(remote_updated_at=T0)
            ack = await client.push("vitalSigns", record)

        assert ack.revision == 3
        assert ack.remote_updated_at == datetime(2024, 3, 1, 8, 0, 1, tzinfo=timezone.utc)

        sent = app["requests"][0]
        assert sent["query"] == {"on_conflict": "id"}
        assert sent["headers"]["apikey"] == "anon"
        assert sent["headers"]["Authorization"] == "Bearer user-jwt"
        assert sent["headers"]["X-Device-ID"] == "device_1"
        assert sent["headers"]["X-Sync-Revision"] == "3"
        assert sent["headers"]["X-Sync-Base-Updated-At"] == T0.isoformat()
        assert "merge-duplicates" in sent["headers"]["Prefer"]
        assert sent["body"] == [
            {
                "patient_id": "pat-1",
                "heart_rate": 80,
                "id": "vs-1",
                "updated_at": "2024-03-01T08:00:00+00:00",
                "deleted": False,
            }
        ]

    @pytest.mark.asyncio
    async def test_tombstone_sends_no_payload(self):
        app = table_app({("POST", "/rest/v1/vital_signs"): (204, None)})
        async with serve(app) as client:
            ack = await client.push("vitalSigns", patient(deleted=True))

        assert ack.remote_updated_at is None
        assert app["requests"][0]["body"] == [
            {"id": "vs-1", "updated_at": "2024-03-01T08:00:00+00:00", "deleted": True}
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [(401, AuthFailure), (409, RejectedSyncFailure), (422, RejectedSyncFailure), (503, TransientSyncFailure)],
    )
    async def test_failures_are_classified(self, status, expected):
        app = table_app({("POST", "/rest/v1/vital_signs"): (status, {"message": "nope"})})
        async with serve(app) as client:
            with pytest.raises(expected) as exc_info:
                await client.push("vitalSigns", patient())

        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_unreachable_remote_is_transient(self):
        client = RestRemoteClient("http://127.0.0.1:9", timeout_seconds=2)
        try:
            with pytest.raises(TransientSyncFailure):
                await client.push("vitalSigns", patient())
        finally:
            await client.close()


class TestPull:
    @pytest.mark.asyncio
    async def test_pull_query_and_rows(self):
        rows = [
            {
                "id": "vs-2",
                "patient_id": "pat-1",
                "heart_rate": 90,
                "updated_at": "2024-03-01T08:05:00Z",
                "deleted": False,
            },
            {"id": "vs-3", "updated_at": "2024-03-01T08:06:00+00:00", "deleted": True},
        ]
        app = table_app({("GET", "/rest/v1/vital_signs"): (200, rows)})
        async with serve(app) as client:
            pulled = await client.pull("vitalSigns", T0, 100)

        query = app["requests"][0]["query"]
        assert query["order"] == "updated_at.asc,id.asc"
        assert query["limit"] == "100"
        assert query["updated_at"] == "gte.2024-03-01T08:00:00+00:00"

        assert [r.id for r in pulled] == ["vs-2", "vs-3"]
        assert pulled[0].payload == {"patientId": "pat-1", "heartRate": 90}
        assert pulled[0].updated_at == datetime(2024, 3, 1, 8, 5, tzinfo=timezone.utc)
        assert pulled[1].deleted

    @pytest.mark.asyncio
    async def test_pull_with_custom_cursor(self):
        rows = [
            {
                "id": "ev-1",
                "updated_at": "2024-03-01T08:05:00Z",
                "server_time": "2024-03-01T08:05:02Z",
            }
        ]
        app = table_app({("GET", "/rest/v1/audit_events"): (200, rows)})
        mapping = SchemaMapping(cursor_fields={"auditEvents": "server_time"})
        async with serve(app, mapping=mapping) as client:
            pulled = await client.pull("auditEvents", None, 10)

        query = app["requests"][0]["query"]
        assert query["order"] == "server_time.asc,id.asc"
        assert "server_time" not in query
        assert pulled[0].watermark == datetime(2024, 3, 1, 8, 5, 2, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_pull_after_id_uses_keyset_filter(self):
        app = table_app()
        async with serve(app) as client:
            await client.pull("patients", T0, 2, after_id="pat-2")

        query = app["requests"][0]["query"]
        assert "updated_at" not in query
        assert query["or"] == (
            '(updated_at.gt."2024-03-01T08:00:00+00:00",'
            'and(updated_at.eq."2024-03-01T08:00:00+00:00",id.gt."pat-2"))'
        )

    @pytest.mark.asyncio
    async def test_malformed_row_timestamp_is_rejected(self):
        rows = [{"id": "pat-9", "updated_at": "not-a-date"}]
        app = table_app({("GET", "/rest/v1/patients"): (200, rows)})
        async with serve(app) as client:
            with pytest.raises(RejectedSyncFailure, match="pat-9"):
                await client.pull("patients", None, 10)
            with pytest.raises(RejectedSyncFailure):
                await client.fetch("patients", "pat-9")

    @pytest.mark.asyncio
    async def test_malformed_ack_timestamp_is_ignored(self):
        app = table_app(
            {("POST", "/rest/v1/vital_signs"): (201, [{"id": "vs-1", "updated_at": "not-a-date"}])}
        )
        async with serve(app) as client:
            ack = await client.push("vitalSigns", patient())

        assert ack.revision == 3
        assert ack.remote_updated_at is None

    @pytest.mark.asyncio
    async def test_fetch(self):
        app = table_app(
            {("GET", "/rest/v1/vital_signs"): (200, [{"id": "vs-1", "updated_at": "2024-03-01T08:00:00Z"}])}
        )
        async with serve(app) as client:
            remote = await client.fetch("vitalSigns", "vs-1")

        assert app["requests"][0]["query"]["id"] == "eq.vs-1"
        assert remote.id == "vs-1"
        assert remote.payload == {}

    @pytest.mark.asyncio
    async def test_fetch_missing(self):
        async with serve(table_app()) as client:
            assert await client.fetch("vitalSigns", "ghost") is None


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_online_when_health_path_answers(self):
        async with serve(table_app()) as client:
            assert await client.is_online()

    @pytest.mark.asyncio
    async def test_offline_on_server_error(self):
        app = table_app({("GET", "/rest/v1/"): (503, "down")})
        async with serve(app) as client:
            assert not await client.is_online()

    @pytest.mark.asyncio
    async def test_offline_when_unreachable(self):
        client = RestRemoteClient("http://127.0.0.1:9", timeout_seconds=2)
        try:
            assert not await client.is_online()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_new_token_is_used(self):
        app = table_app()
        async with serve(app, api_key="anon") as client:
            client.set_access_token("refreshed")
            await client.pull("patients", None, 1)

        assert app["requests"][0]["headers"]["Authorization"] == "Bearer refreshed"
