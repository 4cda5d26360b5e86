"""In-process progress bus for artist imports.

One :class:`ProgressBus` exists per process; the runtime creates it empty at
startup.  Publishers call :meth:`ProgressBus.report`; streaming endpoints
register a listener (or use :meth:`ProgressBus.subscribe`) and read
:meth:`ProgressBus.get_status` for the snapshot sent before live events.

Listeners are called synchronously, in registration order, while the
registry lock is held: per-artist delivery order equals publish order, and
once :meth:`off_progress` returns the listener receives nothing more.
Listeners must therefore be quick and non-blocking (``Queue.put_nowait``).
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)


class ImportStage(StrEnum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    IMPORTING_CATALOG = "importing_catalog"
    IMPORTING_SHOWS = "importing_shows"
    IMPORTING_SETLISTS = "importing_setlists"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({ImportStage.COMPLETED, ImportStage.FAILED})


@dataclass(frozen=True)
class ProgressEvent:
    artist_id: str
    stage: ImportStage
    progress: int
    message: str
    error: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> dict:
        return {
            "artistId": self.artist_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "timestamp": self.at.isoformat(),
        }


@dataclass(frozen=True)
class ActiveImport:
    artist_id: str
    stage: ImportStage
    progress: int
    message: str
    started_at: datetime
    duration_seconds: float

    def to_dict(self) -> dict:
        return {
            "artistId": self.artist_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "startedAt": self.started_at.isoformat(),
            "durationSeconds": round(self.duration_seconds, 1),
        }


Listener = Callable[[ProgressEvent], None]


class ProgressBus:
    """Fan-out of progress events per artist, plus the latest snapshot."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Listener]] = {}
        self._latest: dict[str, ProgressEvent] = {}
        self._started: dict[str, datetime] = {}

    def report(
        self,
        artist_id: str,
        stage: ImportStage | str,
        progress: int,
        message: str,
        error: str | None = None,
    ) -> ProgressEvent:
        """Publish an event to the artist's listeners and store it as the latest status.

        Within one run the percentage never goes backwards: a lower value is
        raised to the previous one.  A run starts at ``initializing`` after
        a terminal event (or no event at all).
        """
        stage = ImportStage(stage)
        progress = max(0, min(100, int(progress)))
        with self._lock:
            prev = self._latest.get(artist_id)
            new_run = prev is None or prev.is_terminal
            if new_run:
                self._started[artist_id] = datetime.now(UTC)
            elif prev is not None and progress < prev.progress:
                progress = prev.progress

            event = ProgressEvent(artist_id, stage, progress, message, error)
            self._latest[artist_id] = event
            for listener in list(self._listeners.get(artist_id, ())):
                try:
                    listener(event)
                except Exception:
                    log.exception("progress_listener_failed", artist_id=artist_id)
        return event

    def on_progress(self, artist_id: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(artist_id, []).append(listener)

    def off_progress(self, artist_id: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(artist_id)
            if not listeners:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                del self._listeners[artist_id]

    def listener_count(self, artist_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(artist_id, ()))

    @asynccontextmanager
    async def subscribe(self, artist_id: str) -> AsyncIterator[asyncio.Queue[ProgressEvent]]:
        """Register a queue for *artist_id* for the duration of the block."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        listener = queue.put_nowait
        self.on_progress(artist_id, listener)
        try:
            yield queue
        finally:
            self.off_progress(artist_id, listener)

    def get_status(self, artist_id: str) -> ProgressEvent | None:
        with self._lock:
            return self._latest.get(artist_id)

    def get_active_imports(self) -> list[ActiveImport]:
        now = datetime.now(UTC)
        with self._lock:
            active = [
                ActiveImport(
                    artist_id=artist_id,
                    stage=event.stage,
                    progress=event.progress,
                    message=event.message,
                    started_at=self._started.get(artist_id, event.at),
                    duration_seconds=(now - self._started.get(artist_id, event.at)).total_seconds(),
                )
                for artist_id, event in self._latest.items()
                if not event.is_terminal and event.stage is not ImportStage.IDLE
            ]
        return sorted(active, key=lambda a: a.started_at)

    def prune(self, older_than: timedelta) -> int:
        """Forget finished runs whose last event is older than *older_than*."""
        cutoff = datetime.now(UTC) - older_than
        with self._lock:
            stale = [aid for aid, ev in self._latest.items() if ev.is_terminal and ev.at < cutoff]
            for artist_id in stale:
                del self._latest[artist_id]
                self._started.pop(artist_id, None)
        return len(stale)
