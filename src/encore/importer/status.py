"""Persisted import progress snapshots, read by the status-poll endpoint.

The store lives in the shared database, so every service instance sees the
same snapshot regardless of which one runs the import.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from encore.importer.progress import TERMINAL_STAGES, ImportStage
from encore.storage.models import ImportProgress

if TYPE_CHECKING:
    from encore.importer.progress import ProgressBus
    from encore.storage.database import Database
    from encore.storage.models import Artist

log = structlog.get_logger(__name__)

_RUNNING_STATUSES = ("initializing", "in_progress")


class SyncStatusStore:
    """Latest stage/percentage/error per artist.

    The mutators are called only by the import orchestrator.
    """

    def __init__(self, db: Database, *, retention_minutes: int = 60, bus: ProgressBus | None = None) -> None:
        self._db = db
        self._bus = bus
        self._retention = timedelta(minutes=retention_minutes)

    @property
    def retention(self) -> timedelta:
        return self._retention

    async def get_progress(self, artist_id: str) -> ImportProgress | None:
        return await self._db.get_progress(artist_id)

    async def start_sync(self, artist_id: str, *, job_id: str | None = None) -> ImportProgress:
        now = datetime.now(UTC)
        return await self._db.save_progress(
            ImportProgress(
                artist_id=artist_id,
                stage=ImportStage.INITIALIZING.value,
                progress=0,
                message="Starting import",
                job_id=job_id,
                started_at=now,
                updated_at=now,
            )
        )

    async def update_progress(self, artist_id: str, **changes: Any) -> ImportProgress:
        """Merge *changes* (``stage``, ``progress``, ``message``, ``error``) into the snapshot."""
        current = await self._db.get_progress(artist_id)
        if current is None:
            current = ImportProgress(artist_id=artist_id, stage=ImportStage.INITIALIZING.value)
        if isinstance(changes.get("stage"), ImportStage):
            changes["stage"] = changes["stage"].value
        updated = current.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
        return await self._db.save_progress(ImportProgress.model_validate(updated.model_dump()))

    async def complete_sync(self, artist_id: str, error: str | None = None) -> ImportProgress:
        now = datetime.now(UTC)
        if error is None:
            changes: dict[str, Any] = {
                "stage": ImportStage.COMPLETED.value,
                "progress": 100,
                "message": "Import complete",
                "error": None,
            }
        else:
            changes = {"stage": ImportStage.FAILED.value, "message": "Import failed", "error": error}
        return await self.update_progress(artist_id, **changes, completed_at=now)

    async def cleanup_stale(self) -> int:
        """Delete snapshots not updated within the retention window.

        Finished runs older than the window are also dropped from the bus.
        """
        removed = await self._db.delete_progress_before(datetime.now(UTC) - self._retention)
        pruned = self._bus.prune(self._retention) if self._bus is not None else 0
        if removed or pruned:
            log.info("import_progress_purged", removed=removed, pruned=pruned)
        return removed

    async def run_cleanup_loop(self, interval_seconds: float = 300.0) -> None:
        """Purge stale snapshots forever; run as a background task."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.cleanup_stale()
            except Exception as exc:
                log.error("import_progress_cleanup_failed", error=str(exc))


def to_status_payload(
    progress: ImportProgress | None,
    artist: Artist | None = None,
) -> dict[str, Any]:
    """Shape the status-poll response from a snapshot, or from the artist's import record."""
    if progress is not None:
        stage = progress.stage
        return {
            "status": stage,
            "progress": progress.progress,
            "message": progress.message,
            "error": progress.error,
            "isImporting": ImportStage(stage) not in TERMINAL_STAGES and stage != ImportStage.IDLE,
            "startedAt": progress.started_at.isoformat() if progress.started_at else None,
            "updatedAt": progress.updated_at.isoformat() if progress.updated_at else None,
            "completedAt": progress.completed_at.isoformat() if progress.completed_at else None,
        }

    if artist is None or artist.import_status is None:
        return {
            "status": ImportStage.IDLE.value,
            "progress": 0,
            "message": "No import has run",
            "error": None,
            "isImporting": False,
            "startedAt": None,
            "updatedAt": None,
            "completedAt": None,
        }

    done = artist.import_status == "completed"
    failed = artist.import_status == "failed"
    return {
        "status": artist.import_status,
        "progress": 100 if done else 0,
        "message": "Import complete" if done else ("Import failed" if failed else "Import running"),
        "error": artist.import_error,
        "isImporting": artist.import_status in _RUNNING_STATUSES,
        "startedAt": artist.import_started_at.isoformat() if artist.import_started_at else None,
        "updatedAt": artist.import_updated_at.isoformat() if artist.import_updated_at else None,
        "completedAt": artist.last_full_sync_at.isoformat() if done and artist.last_full_sync_at else None,
    }
