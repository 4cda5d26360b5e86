"""Tests for the HTTP API: import triggers, status, progress stream, cron resync and health."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from encore.config import AppConfig
from encore.errors import NotFoundError, ProviderAuthError, UpstreamError
from encore.importer.progress import ImportStage, ProgressBus
from encore.importer.resync import ResyncSummary
from encore.server.api import create_api_app, progress_stream
from encore.storage.models import Artist, ImportProgress

_SECRET = "cron-secret"


def _artist(artist_id: str = "a1", **kwargs) -> Artist:
    return Artist(id=artist_id, name="Muse", slug="muse", **kwargs)


def _make_state(config: AppConfig | None = None) -> MagicMock:
    """AppState stand-in: mocked storage and orchestrator, real ProgressBus."""
    config = config or AppConfig()
    config.server.cron_secret = SecretStr(_SECRET)
    config.server.keepalive_seconds = 1

    state = MagicMock()
    state.config = config
    state.bus = ProgressBus()
    state.db = AsyncMock()
    state.db.get_artist.return_value = None
    state.status = AsyncMock()
    state.status.get_progress.return_value = None
    state.orchestrator = MagicMock()
    state.orchestrator.is_importing.return_value = False
    state.orchestrator.active_artist_ids.return_value = []
    state.orchestrator.initiate_import = AsyncMock(return_value=_artist())
    state.driver = MagicMock()
    state.driver.run = AsyncMock(return_value=ResyncSummary(mode="auto"))
    state.scheduler = MagicMock()
    state.scheduler.get_status.return_value = {"running": True, "paused": False}
    state.uptime_seconds.return_value = 12.5
    return state


def _make_client(state: MagicMock | None = None) -> tuple[TestClient, MagicMock]:
    state = state or _make_state()
    return TestClient(create_api_app(state)), state


def _frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


async def _next_frame(stream) -> str:
    return await anext(stream)


# ---------------------------------------------------------------------------
# Import triggers
# ---------------------------------------------------------------------------


def test_import_new_artist() -> None:
    client, state = _make_client()
    resp = client.post("/api/artists/import", json={"tmAttractionId": "K1"})

    assert resp.status_code == 202
    assert resp.json() == {"artistId": "a1", "slug": "muse", "started": True}
    state.orchestrator.initiate_import.assert_awaited_once_with("K1")
    state.orchestrator.submit.assert_called_once_with("a1")


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (NotFoundError("ticketmaster", "not found"), 404),
        (ProviderAuthError("ticketmaster", "api_key not configured"), 503),
        (UpstreamError("ticketmaster", "HTTP 500", status_code=500), 502),
    ],
)
def test_import_new_artist_provider_errors(error: Exception, status_code: int) -> None:
    client, state = _make_client()
    state.orchestrator.initiate_import.side_effect = error

    resp = client.post("/api/artists/import", json={"tmAttractionId": "K1"})

    assert resp.status_code == status_code
    assert "error" in resp.json()
    state.orchestrator.submit.assert_not_called()


def test_import_new_artist_requires_attraction_id() -> None:
    client, _state = _make_client()
    assert client.post("/api/artists/import", json={}).status_code == 422
    assert client.post("/api/artists/import", json={"tmAttractionId": ""}).status_code == 422


def test_import_existing_artist() -> None:
    client, state = _make_client()
    state.db.get_artist.return_value = _artist()

    resp = client.post("/api/artists/a1/import")

    assert resp.status_code == 202
    assert resp.json() == {"artistId": "a1", "started": True, "alreadyRunning": False}
    state.orchestrator.submit.assert_called_once_with("a1")


def test_import_existing_artist_already_running() -> None:
    client, state = _make_client()
    state.db.get_artist.return_value = _artist()
    state.orchestrator.is_importing.return_value = True

    resp = client.post("/api/artists/a1/import")

    assert resp.status_code == 202
    assert resp.json()["alreadyRunning"] is True
    assert resp.json()["started"] is False


def test_import_unknown_artist() -> None:
    client, state = _make_client()
    assert client.post("/api/artists/nope/import").status_code == 404
    state.orchestrator.submit.assert_not_called()


# ---------------------------------------------------------------------------
# Status polling
# ---------------------------------------------------------------------------


def test_import_status_from_snapshot() -> None:
    client, state = _make_client()
    state.status.get_progress.return_value = ImportProgress(
        artist_id="a1", stage="importing_shows", progress=55, message="Imported 3 shows"
    )

    resp = client.get("/api/artists/a1/import/status")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "importing_shows"
    assert body["progress"] == 55
    assert body["isImporting"] is True


def test_import_status_from_artist_record() -> None:
    client, state = _make_client()
    state.db.get_artist.return_value = _artist(import_status="failed", import_error="boom")

    body = client.get("/api/artists/a1/import/status").json()

    assert body["status"] == "failed"
    assert body["error"] == "boom"
    assert body["isImporting"] is False


def test_import_status_unknown_artist() -> None:
    client, _state = _make_client()
    assert client.get("/api/artists/nope/import/status").status_code == 404


# ---------------------------------------------------------------------------
# Progress stream
# ---------------------------------------------------------------------------


def test_stream_terminal_snapshot_closes() -> None:
    client, state = _make_client()
    state.bus.report("a1", ImportStage.COMPLETED, 100, "Imported 10 songs, 2 shows and 1 setlists")

    resp = client.get("/api/artists/a1/import/stream")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    frames = _frames(resp.text)
    assert len(frames) == 1
    assert frames[0]["stage"] == "completed"
    assert frames[0]["progress"] == 100


def test_stream_falls_back_to_persisted_status() -> None:
    client, state = _make_client()
    state.db.get_artist.return_value = _artist(import_status="completed")

    resp = client.get("/api/artists/a1/import/stream")

    frames = _frames(resp.text)
    assert frames == [
        {
            "artistId": "a1",
            "status": "completed",
            "progress": 100,
            "message": "Import complete",
            "error": None,
            "isImporting": False,
            "startedAt": None,
            "updatedAt": None,
            "completedAt": None,
        }
    ]


def test_stream_unknown_artist() -> None:
    client, _state = _make_client()
    assert client.get("/api/artists/nope/import/stream").status_code == 404


@pytest.mark.asyncio
async def test_progress_stream_snapshot_then_live_events() -> None:
    bus = ProgressBus()
    bus.report("a1", ImportStage.INITIALIZING, 5, "Starting")
    stream = progress_stream(bus, "a1", keepalive_seconds=5)

    first = await anext(stream)
    bus.report("a1", ImportStage.IMPORTING_CATALOG, 20, "Catalog")
    bus.report("a2", ImportStage.IMPORTING_CATALOG, 20, "Someone else")
    bus.report("a1", ImportStage.COMPLETED, 100, "Done")
    rest = [frame async for frame in stream]

    assert _frames(first)[0]["stage"] == "initializing"
    assert [f["stage"] for f in _frames("".join(rest))] == ["importing_catalog", "completed"]
    assert bus.listener_count("a1") == 0


@pytest.mark.asyncio
async def test_progress_stream_keepalive() -> None:
    bus = ProgressBus()
    bus.report("a1", ImportStage.IMPORTING_SHOWS, 50, "Shows")
    stream = progress_stream(bus, "a1", keepalive_seconds=0.01)

    await anext(stream)
    assert await anext(stream) == ": ping\n\n"
    await stream.aclose()

    assert bus.listener_count("a1") == 0


@pytest.mark.asyncio
async def test_progress_stream_running_fallback_waits_for_events() -> None:
    bus = ProgressBus()
    stream = progress_stream(
        bus, "a1", keepalive_seconds=5, fallback={"status": "in_progress", "isImporting": True}
    )

    first = await anext(stream)
    assert _frames(first) == [{"artistId": "a1", "status": "in_progress", "isImporting": True}]

    async def next_frame() -> str:
        return await anext(stream)

    pending = asyncio.create_task(next_frame())
    await asyncio.sleep(0)
    bus.report("a1", ImportStage.FAILED, 30, "Import failed", "boom")
    frame = await asyncio.wait_for(pending, timeout=1)

    assert _frames(frame)[0]["error"] == "boom"
    assert [f async for f in stream] == []


@pytest.mark.asyncio
async def test_progress_stream_skips_previous_run_while_importing() -> None:
    bus = ProgressBus()
    bus.report("a1", ImportStage.COMPLETED, 100, "Imported 3 songs, 0 shows and 0 setlists")
    stream = progress_stream(bus, "a1", keepalive_seconds=5, importing=True)

    pending = asyncio.create_task(_next_frame(stream))
    await asyncio.sleep(0.01)
    assert not pending.done()

    bus.report("a1", ImportStage.INITIALIZING, 0, "Preparing import for Muse")
    first = await asyncio.wait_for(pending, timeout=1)
    bus.report("a1", ImportStage.COMPLETED, 100, "Imported 4 songs, 0 shows and 0 setlists")
    rest = [frame async for frame in stream]

    assert _frames(first)[0]["stage"] == "initializing"
    assert [f["message"] for f in _frames("".join(rest))] == ["Imported 4 songs, 0 shows and 0 setlists"]


@pytest.mark.asyncio
async def test_progress_stream_fallback_waits_while_importing() -> None:
    bus = ProgressBus()
    stream = progress_stream(
        bus, "a1", keepalive_seconds=5, fallback={"status": "idle", "isImporting": False}, importing=True
    )

    await anext(stream)
    pending = asyncio.create_task(_next_frame(stream))
    await asyncio.sleep(0)
    bus.report("a1", ImportStage.INITIALIZING, 0, "Starting")

    assert _frames(await asyncio.wait_for(pending, timeout=1))[0]["stage"] == "initializing"
    await stream.aclose()


# ---------------------------------------------------------------------------
# Active imports / health
# ---------------------------------------------------------------------------


def test_active_imports() -> None:
    client, state = _make_client()
    state.bus.report("a1", ImportStage.IMPORTING_CATALOG, 20, "Catalog")
    state.bus.report("a2", ImportStage.COMPLETED, 100, "Done")

    body = client.get("/api/imports/active").json()

    assert body["count"] == 1
    assert body["imports"][0]["artistId"] == "a1"


def test_health() -> None:
    client, state = _make_client()
    state.orchestrator.active_artist_ids.return_value = ["a1"]

    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["activeImports"] == 1
    assert body["uptime_seconds"] == 12.5
    assert body["scheduler"]["running"] is True


def test_rpc_router_mounted() -> None:
    client, _state = _make_client()
    assert client.post("/rpc", json={"cmd": "ping"}).json()["data"]["message"] == "pong"


# ---------------------------------------------------------------------------
# Cron resync
# ---------------------------------------------------------------------------


def _auth(secret: str = _SECRET) -> dict[str, str]:
    return {"Authorization": f"Bearer {secret}"}


def test_cron_without_configured_secret() -> None:
    state = _make_state()
    state.config.server.cron_secret = SecretStr("")
    client, _ = _make_client(state)

    assert client.get("/api/cron/resync", headers=_auth()).status_code == 503
    state.driver.run.assert_not_called()


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": _SECRET}])
def test_cron_rejects_bad_credentials(headers: dict) -> None:
    client, state = _make_client()
    assert client.get("/api/cron/resync", headers=headers).status_code == 401
    state.driver.run.assert_not_called()


def test_cron_get_with_query_params() -> None:
    client, state = _make_client()
    state.driver.run.return_value = ResyncSummary(mode="stale", total_found=2, processed=2, completed=2)

    resp = client.get("/api/cron/resync?mode=stale&limit=5&forceResync=true", headers=_auth())

    assert resp.status_code == 200
    assert resp.json()["totalFound"] == 2
    request = state.driver.run.call_args.args[0]
    assert request.mode == "stale"
    assert request.limit == 5
    assert request.force_resync is True


def test_cron_post_with_json_body() -> None:
    client, state = _make_client()

    resp = client.post("/api/cron/resync", json={"mode": "all", "maxAge": 6}, headers=_auth())

    assert resp.status_code == 200
    request = state.driver.run.call_args.args[0]
    assert request.mode == "all"
    assert request.max_age_hours == 6
    assert request.limit == 10


def test_cron_defaults() -> None:
    client, state = _make_client()
    assert client.post("/api/cron/resync", headers=_auth()).status_code == 200
    request = state.driver.run.call_args.args[0]
    assert (request.mode, request.limit, request.force_resync) == ("auto", 10, False)


@pytest.mark.parametrize("query", ["mode=everything", "limit=0", "limit=500", "maxAge=0"])
def test_cron_invalid_params(query: str) -> None:
    client, state = _make_client()
    resp = client.get(f"/api/cron/resync?{query}", headers=_auth())
    assert resp.status_code == 422
    state.driver.run.assert_not_called()


@pytest.mark.parametrize("content", [b"[1, 2]", b"{not json"])
def test_cron_bad_body(content: bytes) -> None:
    client, state = _make_client()
    resp = client.post(
        "/api/cron/resync",
        content=content,
        headers={**_auth(), "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    state.driver.run.assert_not_called()
