"""Periodic resync of stale and failed artists.

The first batch runs as soon as the scheduler starts; after that one batch
runs every ``interval_minutes``.  ``trigger_now`` cuts the wait short and
may pick a different selection mode for that one batch.  While paused,
both scheduled and triggered batches are skipped.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from encore.importer.resync import ResyncRequest

if TYPE_CHECKING:
    from encore.config import ResyncMode
    from encore.importer.resync import ResyncDriver, ResyncSummary
    from encore.importer.status import SyncStatusStore

log = structlog.get_logger(__name__)


class ResyncScheduler:
    """Drives :class:`ResyncDriver` batches on an interval."""

    def __init__(
        self,
        driver: ResyncDriver,
        status: SyncStatusStore | None = None,
        *,
        interval_minutes: int = 60,
        default_mode: ResyncMode = "auto",
        batch_limit: int = 10,
    ) -> None:
        self._driver = driver
        self._status = status
        self._interval = timedelta(minutes=interval_minutes)
        self._default_mode = default_mode
        self._batch_limit = batch_limit
        self._paused = False
        self._stopping = False
        self._wake = asyncio.Event()
        self._requested_mode: ResyncMode | None = None
        self._task: asyncio.Task | None = None
        self._batches = 0
        self._last_run_at: datetime | None = None
        self._next_run_at: datetime | None = None
        self._last_summary: ResyncSummary | None = None
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="resync-scheduler")
        log.info(
            "scheduler_started",
            interval_minutes=self.interval_minutes,
            mode=self._default_mode,
            batch_limit=self._batch_limit,
        )

    async def stop(self) -> None:
        """Stop after the current batch (if any) finishes."""
        if not self.is_running:
            return
        self._stopping = True
        self._wake.set()
        if self._task:
            await self._task
            self._task = None
        log.info("scheduler_stopped", batches=self._batches)

    def trigger_now(self, mode: ResyncMode | None = None) -> None:
        self._requested_mode = mode
        self._wake.set()

    def pause(self) -> None:
        self._paused = True
        log.info("scheduler_paused")

    def resume(self) -> None:
        self._paused = False
        log.info("scheduler_resumed")

    @property
    def interval_minutes(self) -> int:
        return int(self._interval.total_seconds() // 60)

    def get_status(self) -> dict:
        last = self._last_summary
        return {
            "running": self.is_running,
            "paused": self._paused,
            "interval_minutes": self.interval_minutes,
            "default_mode": self._default_mode,
            "batch_limit": self._batch_limit,
            "batches": self._batches,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "next_run_at": self._next_run_at.isoformat() if self._next_run_at else None,
            "last_summary": last.to_dict() if last else None,
            "last_error": self._last_error,
        }

    async def _loop(self) -> None:
        self._next_run_at = datetime.now(UTC).replace(microsecond=0)
        while not self._stopping:
            if datetime.now(UTC) < self._next_run_at:
                await self._sleep_until_due()
                if self._stopping:
                    break

            self._wake.clear()
            mode = self._requested_mode or self._default_mode
            self._requested_mode = None
            self._next_run_at = datetime.now(UTC).replace(microsecond=0) + self._interval

            if self._paused:
                log.debug("scheduled_resync_skipped", reason="paused")
                continue
            await self._run_batch(mode)

    async def _sleep_until_due(self) -> None:
        """Wait for the next due time, a manual trigger, or ``stop()``."""
        timeout = max((self._next_run_at - datetime.now(UTC)).total_seconds(), 0.0)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)

    async def _run_batch(self, mode: ResyncMode) -> None:
        request = ResyncRequest(mode=mode, limit=self._batch_limit)
        self._batches += 1
        try:
            summary = await self._driver.run(request)
        except Exception as exc:
            self._last_error = str(exc) or type(exc).__name__
            log.error("scheduled_resync_failed", mode=mode, error=self._last_error)
        else:
            self._last_summary = summary
            self._last_error = None
            self._last_run_at = datetime.now(UTC)
            log.info(
                "scheduled_resync_finished",
                mode=mode,
                found=summary.total_found,
                completed=summary.completed,
                failed=summary.failed,
            )

        if self._status is not None:
            try:
                await self._status.cleanup_stale()
            except Exception as exc:
                log.error("import_progress_cleanup_failed", error=str(exc))
