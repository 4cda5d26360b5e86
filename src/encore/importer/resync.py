"""Batch resync: pick artists that need refreshing and import them one at a time."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from encore.config import ResyncMode

if TYPE_CHECKING:
    from encore.config import AppConfig
    from encore.importer.orchestrator import ImportOrchestrator
    from encore.storage.database import Database

log = structlog.get_logger(__name__)


class ResyncRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)
    mode: ResyncMode = "auto"
    force_resync: bool = False
    max_age_hours: int | None = Field(default=None, ge=1)


@dataclass
class ResyncDetail:
    artist_id: str
    name: str
    success: bool
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class ResyncSummary:
    mode: str
    total_found: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    details: list[ResyncDetail] = field(default_factory=list)
    processing_time_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "totalFound": self.total_found,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "details": [
                {
                    "artistId": d.artist_id,
                    "name": d.name,
                    "success": d.success,
                    "error": d.error,
                    "durationSeconds": round(d.duration_seconds, 3),
                }
                for d in self.details
            ],
            "processingTimeSeconds": round(self.processing_time_seconds, 3),
        }


class ResyncDriver:
    """Runs artists through the orchestrator strictly sequentially.

    One artist failing (or raising) is recorded in the summary and never
    stops the rest of the batch.  Runs are serialized: a second caller
    waits for the current batch to finish.
    """

    def __init__(
        self,
        orchestrator: ImportOrchestrator,
        db: Database,
        config: AppConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._db = db
        self._config = config
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_summary: ResyncSummary | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_summary(self) -> ResyncSummary | None:
        return self._last_summary

    async def run(self, request: ResyncRequest | None = None) -> ResyncSummary:
        request = request or ResyncRequest()
        async with self._lock:
            summary = await self._run(request)
        self._last_summary = summary
        return summary

    async def _run(self, request: ResyncRequest) -> ResyncSummary:
        sync = self._config.sync
        started = time.monotonic()
        max_age = timedelta(hours=request.max_age_hours or sync.max_age_hours)

        artists = await self._db.select_for_resync(
            request.mode,
            limit=request.limit,
            max_age=max_age,
            stuck_after=timedelta(minutes=sync.stuck_after_minutes),
            force=request.force_resync,
        )
        summary = ResyncSummary(mode=request.mode, total_found=len(artists))
        log.info(
            "resync_started",
            mode=request.mode,
            found=len(artists),
            limit=request.limit,
            force=request.force_resync,
        )

        for i, artist in enumerate(artists):
            if i and sync.inter_artist_delay_seconds > 0:
                await self._sleep(sync.inter_artist_delay_seconds)

            t0 = time.monotonic()
            try:
                result = await self._orchestrator.run_full_import(artist.id)
            except Exception as exc:
                log.error("resync_artist_failed", artist_id=artist.id, error=str(exc))
                detail = ResyncDetail(artist.id, artist.name, success=False, error=str(exc) or type(exc).__name__)
            else:
                detail = ResyncDetail(artist.id, artist.name, success=result.success, error=result.error)
            detail.duration_seconds = time.monotonic() - t0

            summary.details.append(detail)
            summary.processed += 1
            if detail.success:
                summary.completed += 1
            else:
                summary.failed += 1

        summary.processing_time_seconds = time.monotonic() - started
        log.info(
            "resync_finished",
            mode=request.mode,
            processed=summary.processed,
            completed=summary.completed,
            failed=summary.failed,
            duration=round(summary.processing_time_seconds, 2),
        )
        return summary
