"""Process-wide runtime state for the Encore server."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from encore.importer.orchestrator import ImportOrchestrator
from encore.importer.progress import ProgressBus
from encore.importer.resync import ResyncDriver
from encore.importer.scheduler import ResyncScheduler
from encore.importer.status import SyncStatusStore
from encore.importer.tasks import TaskRunner
from encore.storage.database import Database

if TYPE_CHECKING:
    from encore.config import AppConfig
    from encore.importer.orchestrator import ClientFactory

log = structlog.get_logger(__name__)

_CLEANUP_INTERVAL_SECONDS = 300.0


class AppState:
    """Holds the components shared by the API, the RPC endpoint and the scheduler."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        *,
        bus: ProgressBus,
        status: SyncStatusStore,
        runner: TaskRunner,
        orchestrator: ImportOrchestrator,
        driver: ResyncDriver,
        scheduler: ResyncScheduler,
    ) -> None:
        self.config = config
        self.db = db
        self.bus = bus
        self.status = status
        self.runner = runner
        self.orchestrator = orchestrator
        self.driver = driver
        self.scheduler = scheduler
        self.started_at: datetime = datetime.now(UTC)
        self.shutdown_event: asyncio.Event = asyncio.Event()
        self._cleanup_task: asyncio.Task | None = None

    @classmethod
    async def create(
        cls,
        config: AppConfig,
        *,
        db: Database | None = None,
        spotify_factory: ClientFactory | None = None,
        ticketmaster_factory: ClientFactory | None = None,
        setlistfm_factory: ClientFactory | None = None,
    ) -> AppState:
        """Connect the database and wire every component together."""
        if db is None:
            db = Database(config.db_path)
            await db.connect()

        bus = ProgressBus()
        status = SyncStatusStore(db, retention_minutes=config.sync.status_retention_minutes, bus=bus)
        runner = TaskRunner()
        orchestrator = ImportOrchestrator(
            config,
            db,
            bus,
            status,
            runner=runner,
            spotify_factory=spotify_factory,
            ticketmaster_factory=ticketmaster_factory,
            setlistfm_factory=setlistfm_factory,
        )
        driver = ResyncDriver(orchestrator, db, config)
        scheduler = ResyncScheduler(
            driver,
            status,
            interval_minutes=config.sync.interval_minutes,
            default_mode=config.sync.default_mode,
            batch_limit=config.sync.batch_limit,
        )
        return cls(
            config,
            db,
            bus=bus,
            status=status,
            runner=runner,
            orchestrator=orchestrator,
            driver=driver,
            scheduler=scheduler,
        )

    # -- lifecycle ------------------------------------------------------------

    def providers_configured(self) -> bool:
        c = self.config
        return c.is_spotify_configured() or c.is_ticketmaster_configured() or c.is_setlistfm_configured()

    async def start(self, *, scheduler: bool = True) -> None:
        """Start the status-store cleanup loop and, if requested, the resync scheduler."""
        self._cleanup_task = asyncio.create_task(
            self.status.run_cleanup_loop(_CLEANUP_INTERVAL_SECONDS),
            name="import-progress-cleanup",
        )
        if scheduler and self.providers_configured():
            await self.scheduler.start()
        elif scheduler:
            log.warning("scheduler_not_started", reason="no provider credentials configured")

    async def close(self) -> None:
        await self.scheduler.stop()
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        await self.runner.shutdown()
        await self.db.close()
        log.info("app_state_closed")

    # -- queries ----------------------------------------------------------------

    def uptime_seconds(self) -> float:
        return round((datetime.now(UTC) - self.started_at).total_seconds(), 2)

    async def get_status(self) -> dict[str, Any]:
        """Return a snapshot of the server status."""
        return {
            "uptime_seconds": self.uptime_seconds(),
            "started_at": self.started_at.isoformat(),
            "scheduler": self.scheduler.get_status(),
            "active_imports": self.orchestrator.active_artist_ids(),
            "background_tasks": self.runner.active,
            "counts": await self.db.get_counts(),
            "providers": {
                "spotify": self.config.is_spotify_configured(),
                "ticketmaster": self.config.is_ticketmaster_configured(),
                "setlistfm": self.config.is_setlistfm_configured(),
            },
        }

    # -- mutations --------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Signal the server to shut down gracefully."""
        log.info("shutdown_requested")
        self.shutdown_event.set()
