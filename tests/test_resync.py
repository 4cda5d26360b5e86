"""Tests for the batch ResyncDriver."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from encore.config import AppConfig
from encore.importer.orchestrator import ImportResult
from encore.importer.resync import ResyncDriver, ResyncRequest, ResyncSummary
from encore.storage import Database


class FakeOrchestrator:
    """Records calls; raises or fails for selected artists."""

    def __init__(self, *, raising=(), failing=()):
        self.raising = set(raising)
        self.failing = set(failing)
        self.calls: list[str] = []
        self.driver: ResyncDriver | None = None
        self.running_seen: list[bool] = []

    async def run_full_import(self, artist_id: str) -> ImportResult:
        self.calls.append(artist_id)
        if self.driver is not None:
            self.running_seen.append(self.driver.is_running)
        if artist_id in self.raising:
            raise RuntimeError("unexpected crash")
        if artist_id in self.failing:
            return ImportResult(artist_id, success=False, error="spotify: credentials rejected")
        return ImportResult(artist_id, success=True)


async def _artists(db: Database, count: int) -> list[str]:
    ids = []
    for i in range(count):
        artist = await db.create_artist(name=f"Band {i}", spotify_id=f"sp{i}", popularity=100 - i)
        ids.append(artist.id)
    return ids


# ---------------------------------------------------------------------------
# ResyncRequest
# ---------------------------------------------------------------------------


def test_request_defaults():
    request = ResyncRequest()
    assert request.limit == 10
    assert request.mode == "auto"
    assert request.force_resync is False
    assert request.max_age_hours is None


@pytest.mark.parametrize(
    "kwargs",
    [{"limit": 0}, {"limit": 101}, {"mode": "everything"}, {"max_age_hours": 0}],
)
def test_request_validation(kwargs: dict):
    with pytest.raises(ValidationError):
        ResyncRequest(**kwargs)


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_continues_past_failures(config: AppConfig, db: Database):
    ids = await _artists(db, 5)
    orchestrator = FakeOrchestrator(raising={ids[2]}, failing={ids[3]})
    driver = ResyncDriver(orchestrator, db, config)

    summary = await driver.run(ResyncRequest(mode="all", limit=10))

    assert orchestrator.calls == ids
    assert summary.total_found == 5
    assert summary.processed == 5
    assert summary.completed == 3
    assert summary.failed == 2
    assert [d.success for d in summary.details] == [True, True, False, False, True]
    assert summary.details[2].error == "unexpected crash"
    assert summary.details[3].error == "spotify: credentials rejected"
    assert driver.last_summary is summary


@pytest.mark.asyncio
async def test_delay_between_artists(config: AppConfig, db: Database):
    await _artists(db, 3)
    config.sync.inter_artist_delay_seconds = 1.5
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    driver = ResyncDriver(FakeOrchestrator(), db, config, sleep=fake_sleep)
    await driver.run(ResyncRequest(mode="all"))

    assert sleeps == [1.5, 1.5]


@pytest.mark.asyncio
async def test_limit_caps_batch(config: AppConfig, db: Database):
    ids = await _artists(db, 4)
    orchestrator = FakeOrchestrator()
    driver = ResyncDriver(orchestrator, db, config)

    summary = await driver.run(ResyncRequest(mode="all", limit=2))

    assert orchestrator.calls == ids[:2]
    assert summary.total_found == 2


@pytest.mark.asyncio
async def test_empty_batch(config: AppConfig, db: Database):
    driver = ResyncDriver(FakeOrchestrator(), db, config)
    summary = await driver.run()
    assert summary.mode == "auto"
    assert summary.processed == 0
    assert summary.details == []


@pytest.mark.asyncio
async def test_is_running_during_batch(config: AppConfig, db: Database):
    await _artists(db, 2)
    orchestrator = FakeOrchestrator()
    driver = ResyncDriver(orchestrator, db, config)
    orchestrator.driver = driver

    await driver.run(ResyncRequest(mode="all"))

    assert orchestrator.running_seen == [True, True]
    assert driver.is_running is False


@pytest.mark.asyncio
async def test_request_options_reach_selection(config: AppConfig):
    db = AsyncMock()
    db.select_for_resync.return_value = []
    driver = ResyncDriver(FakeOrchestrator(), db, config)

    await driver.run(ResyncRequest(mode="stale", limit=5, force_resync=True, max_age_hours=6))

    args, kwargs = db.select_for_resync.call_args
    assert args == ("stale",)
    assert kwargs["limit"] == 5
    assert kwargs["max_age"] == timedelta(hours=6)
    assert kwargs["stuck_after"] == timedelta(minutes=config.sync.stuck_after_minutes)
    assert kwargs["force"] is True


@pytest.mark.asyncio
async def test_default_max_age_from_config(config: AppConfig):
    db = AsyncMock()
    db.select_for_resync.return_value = []
    config.sync.max_age_hours = 12

    await ResyncDriver(FakeOrchestrator(), db, config).run(ResyncRequest(mode="stale"))

    assert db.select_for_resync.call_args.kwargs["max_age"] == timedelta(hours=12)


def test_summary_to_dict():
    summary = ResyncSummary(mode="auto", total_found=1, processed=1, failed=1, processing_time_seconds=1.23456)
    payload = summary.to_dict()
    assert payload == {
        "mode": "auto",
        "totalFound": 1,
        "processed": 1,
        "completed": 0,
        "failed": 1,
        "details": [],
        "processingTimeSeconds": 1.235,
    }
