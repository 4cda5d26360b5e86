"""Tests for SyncStatusStore and the status-poll payload."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from encore.importer.progress import ImportStage, ProgressBus
from encore.importer.status import SyncStatusStore, to_status_payload
from encore.storage import Database
from encore.storage.models import Artist, ImportProgress


@pytest.mark.asyncio
async def test_start_update_complete(db: Database):
    store = SyncStatusStore(db)

    started = await store.start_sync("a1", job_id="job-1")
    assert started.stage == "initializing"
    assert started.progress == 0
    assert started.started_at is not None

    updated = await store.update_progress("a1", stage=ImportStage.IMPORTING_SHOWS, progress=55, message="Shows")
    assert updated.stage == "importing_shows"
    assert updated.progress == 55
    assert updated.job_id == "job-1"

    done = await store.complete_sync("a1")
    assert done.stage == "completed"
    assert done.progress == 100
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_complete_with_error_keeps_progress(db: Database):
    store = SyncStatusStore(db)
    await store.start_sync("a1")
    await store.update_progress("a1", stage="importing_catalog", progress=30)

    failed = await store.complete_sync("a1", error="Spotify credentials rejected")

    assert failed.stage == "failed"
    assert failed.progress == 30
    assert failed.error == "Spotify credentials rejected"


@pytest.mark.asyncio
async def test_update_without_snapshot_creates_one(db: Database):
    store = SyncStatusStore(db)
    progress = await store.update_progress("a1", progress=10, message="hi")
    assert progress.stage == "initializing"
    assert (await store.get_progress("a1")).progress == 10


@pytest.mark.asyncio
async def test_update_rejects_out_of_range_progress(db: Database):
    store = SyncStatusStore(db)
    await store.start_sync("a1")
    with pytest.raises(ValueError):
        await store.update_progress("a1", progress=150)


@pytest.mark.asyncio
async def test_cleanup_stale(db: Database):
    store = SyncStatusStore(db, retention_minutes=60)
    now = datetime.now(UTC)
    await db.save_progress(ImportProgress(artist_id="old", stage="completed", updated_at=now - timedelta(hours=2)))
    await store.start_sync("fresh")

    assert await store.cleanup_stale() == 1
    assert await store.get_progress("old") is None
    assert await store.get_progress("fresh") is not None
    assert store.retention == timedelta(minutes=60)


@pytest.mark.asyncio
async def test_cleanup_stale_prunes_finished_runs_from_bus(db: Database):
    bus = ProgressBus()
    store = SyncStatusStore(db, retention_minutes=60, bus=bus)
    bus.report("old", ImportStage.COMPLETED, 100, "Import complete")
    bus.report("running", ImportStage.IMPORTING_CATALOG, 20, "Catalog")
    bus._latest["old"] = dataclasses.replace(bus.get_status("old"), at=datetime.now(UTC) - timedelta(hours=2))

    await store.cleanup_stale()

    assert bus.get_status("old") is None
    assert bus.get_status("running") is not None


# ---------------------------------------------------------------------------
# to_status_payload
# ---------------------------------------------------------------------------


def test_payload_from_snapshot():
    progress = ImportProgress(
        artist_id="a1",
        stage="importing_shows",
        progress=60,
        message="Shows",
        started_at=datetime(2030, 1, 1, tzinfo=UTC),
    )
    payload = to_status_payload(progress)
    assert payload["status"] == "importing_shows"
    assert payload["progress"] == 60
    assert payload["isImporting"] is True
    assert payload["startedAt"] == "2030-01-01T00:00:00+00:00"
    assert payload["completedAt"] is None


def test_payload_for_terminal_snapshot():
    payload = to_status_payload(ImportProgress(artist_id="a1", stage="failed", progress=20, error="boom"))
    assert payload["isImporting"] is False
    assert payload["error"] == "boom"


def test_payload_idle_without_any_record():
    payload = to_status_payload(None)
    assert payload["status"] == "idle"
    assert payload["isImporting"] is False

    artist = Artist(id="a1", name="Muse", slug="muse")
    assert to_status_payload(None, artist)["status"] == "idle"


def test_payload_falls_back_to_artist_record():
    synced = datetime(2030, 1, 2, tzinfo=UTC)
    completed = Artist(id="a1", name="Muse", slug="muse", import_status="completed", last_full_sync_at=synced)
    payload = to_status_payload(None, completed)
    assert payload["status"] == "completed"
    assert payload["progress"] == 100
    assert payload["completedAt"] == synced.isoformat()

    running = Artist(id="a1", name="Muse", slug="muse", import_status="in_progress")
    assert to_status_payload(None, running)["isImporting"] is True

    failed = Artist(id="a1", name="Muse", slug="muse", import_status="failed", import_error="boom")
    payload = to_status_payload(None, failed)
    assert payload["message"] == "Import failed"
    assert payload["error"] == "boom"
