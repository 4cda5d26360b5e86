"""Artist import orchestrator.

Runs one artist through a fixed stage sequence::

    initializing -> importing_catalog -> importing_shows
                 -> importing_setlists -> finalizing -> completed

with ``failed`` reachable from any running stage.  Every stage transition
updates the artist's import record, persists the progress snapshot,
publishes a progress event, and only then does the stage's work.

At most one run per artist is in flight: concurrent triggers in this
process share the running task, and the database claim keeps other
processes out until the run finishes or is considered stuck.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from encore.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    ProviderAuthError,
    RateLimitedError,
)
from encore.importer.matching import (
    best_candidate,
    dedupe_tracks,
    is_likely_live_album,
    is_likely_live_title,
    title_key,
)
from encore.importer.progress import ImportStage

if TYPE_CHECKING:
    from encore.config import AppConfig
    from encore.importer.progress import ProgressBus
    from encore.importer.status import SyncStatusStore
    from encore.importer.tasks import TaskRunner
    from encore.providers.models import CatalogTrack, HistoricalSetlist
    from encore.storage.database import Database
    from encore.storage.models import Artist, SyncField

log = structlog.get_logger(__name__)

STAGE_WEIGHTS: dict[ImportStage, int] = {
    ImportStage.INITIALIZING: 5,
    ImportStage.IMPORTING_CATALOG: 35,
    ImportStage.IMPORTING_SHOWS: 35,
    ImportStage.IMPORTING_SETLISTS: 20,
    ImportStage.FINALIZING: 5,
}

_PREDICTED_SETLIST_NAME = "Predicted Setlist"
_SONG_REPORT_EVERY = 10

ClientFactory = Callable[[Any], Any]


def stage_progress(stage: ImportStage, fraction: float = 0.0) -> int:
    """Cumulative percentage for *stage* when *fraction* of it is done."""
    if stage is ImportStage.COMPLETED:
        return 100
    if stage not in STAGE_WEIGHTS:
        return 0
    start = 0
    for s, weight in STAGE_WEIGHTS.items():
        if s is stage:
            break
        start += weight
    fraction = min(max(fraction, 0.0), 1.0)
    return int(start + STAGE_WEIGHTS[stage] * fraction)


@dataclass
class ImportStats:
    songs: int = 0
    shows: int = 0
    venues: int = 0
    setlists: int = 0
    predicted_setlists: int = 0
    skipped_live_tracks: int = 0
    errors: int = 0
    skipped_stages: list[str] = field(default_factory=list)
    stage_seconds: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ImportResult:
    artist_id: str
    success: bool
    error: str | None = None
    conflict: bool = False
    stats: ImportStats = field(default_factory=ImportStats)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "artistId": self.artist_id,
            "success": self.success,
            "error": self.error,
            "conflict": self.conflict,
            "stats": self.stats.to_dict(),
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class _Clients:
    spotify: Any = None
    ticketmaster: Any = None
    setlistfm: Any = None


@dataclass
class _Run:
    artist: Artist
    job_id: str
    log: Any
    stats: ImportStats = field(default_factory=ImportStats)
    stage: ImportStage = ImportStage.IDLE
    progress: int = 0
    venue_ids: set[int] = field(default_factory=set)


class ImportOrchestrator:
    """Single-flight, stage-by-stage import of one artist's external data."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        bus: ProgressBus,
        status: SyncStatusStore,
        *,
        runner: TaskRunner | None = None,
        spotify_factory: ClientFactory | None = None,
        ticketmaster_factory: ClientFactory | None = None,
        setlistfm_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._bus = bus
        self._status = status
        self._runner = runner
        self._spotify_factory = spotify_factory
        self._ticketmaster_factory = ticketmaster_factory
        self._setlistfm_factory = setlistfm_factory
        self._inflight: dict[str, asyncio.Task[ImportResult]] = {}

    # -- public API ---------------------------------------------------------

    def is_importing(self, artist_id: str) -> bool:
        task = self._inflight.get(artist_id)
        return task is not None and not task.done()

    def active_artist_ids(self) -> list[str]:
        return [aid for aid, task in self._inflight.items() if not task.done()]

    async def run_full_import(self, artist_id: str) -> ImportResult:
        """Run (or join) the import for *artist_id* and wait for its result.

        Cancelling the caller does not cancel the import itself.
        """
        return await asyncio.shield(self.submit(artist_id))

    def submit(self, artist_id: str) -> asyncio.Task[ImportResult]:
        """Start the import in the background, or return the task already running it."""
        task = self._inflight.get(artist_id)
        if task is not None and not task.done():
            log.info("import_coalesced", artist_id=artist_id)
            return task

        name = f"import:{artist_id}"
        if self._runner is not None:
            task = self._runner.submit(name, self._run(artist_id))
        else:
            task = asyncio.create_task(self._run(artist_id), name=name)
        self._inflight[artist_id] = task
        task.add_done_callback(lambda t: self._forget(artist_id, t))
        return task

    def _forget(self, artist_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(artist_id) is task:
            del self._inflight[artist_id]

    async def initiate_import(self, tm_attraction_id: str) -> Artist:
        """Create (or refresh) the artist behind a Ticketmaster attraction id."""
        if not self._config.is_ticketmaster_configured() and self._ticketmaster_factory is None:
            raise ProviderAuthError("ticketmaster", "api_key not configured")
        async with self._create_ticketmaster() as tm:
            attraction = await tm.get_attraction(tm_attraction_id)
        artist = await self._db.upsert_artist_by_attraction(
            tm_attraction_id=tm_attraction_id,
            name=attraction.name,
            image_url=attraction.image_url,
            genres=attraction.genres,
        )
        log.info("artist_initiated", artist_id=artist.id, tm_attraction_id=tm_attraction_id, name=artist.name)
        return artist

    # -- client construction ----------------------------------------------

    def _create_spotify(self):  # noqa: ANN202
        if self._spotify_factory:
            return self._spotify_factory(self._config.spotify)
        from encore.providers.spotify import SpotifyClient

        return SpotifyClient(self._config.spotify)

    def _create_ticketmaster(self):  # noqa: ANN202
        if self._ticketmaster_factory:
            return self._ticketmaster_factory(self._config.ticketmaster)
        from encore.providers.ticketmaster import TicketmasterClient

        return TicketmasterClient(self._config.ticketmaster)

    def _create_setlistfm(self):  # noqa: ANN202
        if self._setlistfm_factory:
            return self._setlistfm_factory(self._config.setlistfm)
        from encore.providers.setlistfm import SetlistFmClient

        return SetlistFmClient(self._config.setlistfm)

    async def _open_clients(self, stack: AsyncExitStack) -> _Clients:
        clients = _Clients()
        if self._spotify_factory or self._config.is_spotify_configured():
            clients.spotify = await stack.enter_async_context(self._create_spotify())
        if self._ticketmaster_factory or self._config.is_ticketmaster_configured():
            clients.ticketmaster = await stack.enter_async_context(self._create_ticketmaster())
        if self._setlistfm_factory or self._config.is_setlistfm_configured():
            clients.setlistfm = await stack.enter_async_context(self._create_setlistfm())
        return clients

    # -- run ----------------------------------------------------------------

    async def _run(self, artist_id: str) -> ImportResult:
        started = time.monotonic()
        artist = await self._db.get_artist(artist_id)
        if artist is None:
            error = f"Artist {artist_id} not found"
            log.warning("import_artist_missing", artist_id=artist_id)
            self._bus.report(artist_id, ImportStage.FAILED, 0, "Import failed", error)
            return ImportResult(artist_id, success=False, error=error)

        try:
            await self._claim(artist_id)
        except ConcurrencyConflictError as exc:
            log.info("import_conflict", artist_id=artist_id)
            return ImportResult(artist_id, success=False, error=str(exc), conflict=True)

        job_id = uuid.uuid4().hex[:12]
        run = _Run(artist=artist, job_id=job_id, log=log.bind(artist_id=artist_id, job_id=job_id))
        run.log.info("import_started", name=artist.name)

        try:
            await self._status.start_sync(artist_id, job_id=job_id)
            async with AsyncExitStack() as stack:
                clients = await self._open_clients(stack)
                await self._initialize(run, clients)
                await self._stage(
                    run,
                    ImportStage.IMPORTING_CATALOG,
                    "catalog",
                    run.artist.spotify_id,
                    clients.spotify,
                    "catalog_synced_at",
                    self._import_catalog,
                )
                await self._stage(
                    run,
                    ImportStage.IMPORTING_SHOWS,
                    "shows",
                    run.artist.tm_attraction_id,
                    clients.ticketmaster,
                    "shows_synced_at",
                    self._import_shows,
                )
                await self._stage(
                    run,
                    ImportStage.IMPORTING_SETLISTS,
                    "setlists",
                    run.artist.setlistfm_mbid,
                    clients.setlistfm,
                    "setlists_synced_at",
                    self._import_setlists,
                )
            await self._finalize(run)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            run.log.error("import_failed", stage=run.stage.value, error=error)
            await self._fail(run, error)
            return ImportResult(
                artist_id,
                success=False,
                error=error,
                stats=run.stats,
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        run.log.info("import_completed", duration=round(duration, 2), **run.stats.to_dict())
        return ImportResult(artist_id, success=True, stats=run.stats, duration_seconds=duration)

    async def _claim(self, artist_id: str) -> None:
        stuck_before = datetime.now(UTC) - timedelta(minutes=self._config.sync.stuck_after_minutes)
        if not await self._db.claim_import(artist_id, stuck_before=stuck_before):
            raise ConcurrencyConflictError(artist_id)

    async def _advance(self, run: _Run, stage: ImportStage, fraction: float, message: str) -> None:
        run.stage = stage
        run.progress = max(run.progress, stage_progress(stage, fraction))
        await self._status.update_progress(
            run.artist.id,
            stage=stage,
            progress=run.progress,
            message=message,
            error=None,
        )
        self._bus.report(run.artist.id, stage, run.progress, message)

    async def _fail(self, run: _Run, error: str) -> None:
        run.stage = ImportStage.FAILED
        try:
            await self._db.set_import_status(run.artist.id, "failed", error=error)
            await self._status.complete_sync(run.artist.id, error=error)
        finally:
            self._bus.report(run.artist.id, ImportStage.FAILED, run.progress, "Import failed", error)

    async def _stage(
        self,
        run: _Run,
        stage: ImportStage,
        label: str,
        external_id: str | None,
        client: Any,
        sync_field: SyncField,
        work: Callable[[_Run, Any, str], Awaitable[None]],
    ) -> None:
        await self._db.set_import_status(run.artist.id, "in_progress")
        await self._advance(run, stage, 0.0, f"Importing {label}")

        if not external_id or client is None:
            reason = "no provider id" if not external_id else "provider not configured"
            run.log.info("import_stage_skipped", stage=stage.value, reason=reason)
            run.stats.skipped_stages.append(stage.value)
            await self._advance(run, stage, 1.0, f"Skipped {label}: {reason}")
            return

        t0 = time.monotonic()
        try:
            await work(run, client, external_id)
        except RateLimitedError as exc:
            run.log.warning("import_stage_rate_limited", stage=stage.value, retry_after=exc.retry_after)
            run.stats.skipped_stages.append(stage.value)
            await self._advance(run, stage, 1.0, f"Postponed {label}: rate limited")
            return
        except NotFoundError as exc:
            run.log.warning("import_stage_not_found", stage=stage.value, error=str(exc))
            run.stats.skipped_stages.append(stage.value)
            await self._advance(run, stage, 1.0, f"Skipped {label}: not found upstream")
            return
        finally:
            run.stats.stage_seconds[stage.value] = round(time.monotonic() - t0, 3)

        await self._db.stamp_sync(run.artist.id, sync_field)
        await self._advance(run, stage, 1.0, f"Imported {label}")

    # -- initializing ---------------------------------------------------------

    async def _initialize(self, run: _Run, clients: _Clients) -> None:
        artist = run.artist
        await self._advance(run, ImportStage.INITIALIZING, 0.0, f"Preparing import for {artist.name}")

        resolved: dict[str, str] = {}
        lookups = [
            ("spotify_id", artist.spotify_id, clients.spotify, "search_artists"),
            ("tm_attraction_id", artist.tm_attraction_id, clients.ticketmaster, "search_attractions"),
            ("setlistfm_mbid", artist.setlistfm_mbid, clients.setlistfm, "search_artists"),
        ]
        for i, (key, current, client, method) in enumerate(lookups, start=1):
            if current or client is None:
                continue
            try:
                candidates = await getattr(client, method)(artist.name)
            except (NotFoundError, RateLimitedError) as exc:
                run.log.info("artist_id_unresolved", field=key, error=str(exc))
            else:
                if candidates:
                    resolved[key] = best_candidate(artist.name, candidates).external_id
            await self._advance(run, ImportStage.INITIALIZING, i / (len(lookups) + 1), f"Resolving {key}")

        if resolved:
            run.log.info("artist_ids_resolved", **resolved)
            run.artist = artist = await self._db.set_external_ids(artist.id, **resolved)

        if artist.spotify_id and clients.spotify is not None:
            try:
                profile = await clients.spotify.get_artist(artist.spotify_id)
            except (NotFoundError, RateLimitedError) as exc:
                run.log.info("artist_profile_unavailable", error=str(exc))
            else:
                await self._db.update_artist_profile(
                    artist.id,
                    image_url=profile.image_url,
                    genres=profile.genres,
                    popularity=profile.popularity,
                    followers=profile.followers,
                )

        await self._advance(run, ImportStage.INITIALIZING, 1.0, "Artist identifiers ready")

    # -- importing_catalog ----------------------------------------------------

    async def _import_catalog(self, run: _Run, sp: Any, spotify_id: str) -> None:
        stage = ImportStage.IMPORTING_CATALOG
        albums = [album async for album in sp.iter_catalog(spotify_id)]
        studio = [a for a in albums if not is_likely_live_album(a.name)]
        await self._advance(run, stage, 0.1, f"Found {len(studio)} studio releases")

        found: dict[str, CatalogTrack] = {}
        for i, album in enumerate(studio, start=1):
            try:
                async for track in sp.iter_album_tracks(album):
                    if is_likely_live_title(track.name):
                        run.stats.skipped_live_tracks += 1
                        continue
                    found.setdefault(track.spotify_id, track)
            except (RateLimitedError, ProviderAuthError):
                raise
            except Exception as exc:
                run.log.warning("catalog_album_failed", album_id=album.spotify_id, error=str(exc))
                run.stats.errors += 1
            await self._advance(run, stage, 0.1 + 0.4 * i / len(studio), f"Scanned {i}/{len(studio)} releases")

        tracks = list(found.values())
        try:
            detailed = await sp.get_tracks(list(found))
        except (RateLimitedError, ProviderAuthError):
            raise
        except Exception as exc:
            run.log.warning("catalog_details_failed", error=str(exc))
            run.stats.errors += 1
        else:
            by_id = {t.spotify_id: t for t in detailed}
            tracks = [
                by_id[t.spotify_id].model_copy(
                    update={"album_name": by_id[t.spotify_id].album_name or t.album_name}
                )
                if t.spotify_id in by_id
                else t
                for t in tracks
            ]

        unique = dedupe_tracks(tracks)
        await self._advance(run, stage, 0.6, f"Saving {len(unique)} songs")

        for i, track in enumerate(unique, start=1):
            try:
                await self._db.upsert_song(
                    artist_id=run.artist.id,
                    title=track.name,
                    title_key=title_key(track.name),
                    spotify_id=track.spotify_id,
                    album_name=track.album_name,
                    isrc=track.isrc,
                    duration_ms=track.duration_ms,
                    popularity=track.popularity,
                )
                run.stats.songs += 1
            except Exception as exc:
                run.log.warning("catalog_song_failed", spotify_id=track.spotify_id, error=str(exc))
                run.stats.errors += 1
            if i % _SONG_REPORT_EVERY == 0 or i == len(unique):
                await self._advance(run, stage, 0.6 + 0.4 * i / len(unique), f"Saved {i}/{len(unique)} songs")

    # -- importing_shows ------------------------------------------------------

    async def _import_shows(self, run: _Run, tm: Any, attraction_id: str) -> None:
        stage = ImportStage.IMPORTING_SHOWS
        pages = 0
        async for page in tm.iter_events_by_attraction(attraction_id):
            pages += 1
            for event in page:
                if event.venue is None:
                    run.log.debug("show_skipped", tm_event_id=event.tm_event_id, reason="no venue")
                    continue
                try:
                    venue = await self._db.upsert_venue(
                        source="ticketmaster",
                        **event.venue.model_dump(),
                    )
                    run.venue_ids.add(venue.id)
                    await self._db.upsert_show(
                        artist_id=run.artist.id,
                        name=event.name or f"{run.artist.name} at {venue.name}",
                        show_date=event.event_date,
                        venue_id=venue.id,
                        status="upcoming",
                        ticket_url=event.ticket_url,
                        tm_event_id=event.tm_event_id,
                    )
                    run.stats.shows += 1
                except Exception as exc:
                    run.log.warning("show_item_failed", tm_event_id=event.tm_event_id, error=str(exc))
                    run.stats.errors += 1
            run.stats.venues = len(run.venue_ids)
            await self._advance(run, stage, min(0.9, 0.3 * pages), f"Imported {run.stats.shows} shows")

    # -- importing_setlists ---------------------------------------------------

    async def _import_setlists(self, run: _Run, sfm: Any, mbid: str) -> None:
        stage = ImportStage.IMPORTING_SETLISTS
        max_pages = self._config.sync.setlist_pages
        pages = 0
        async for page in sfm.iter_artist_setlists(mbid, max_pages=max_pages):
            pages += 1
            for setlist in page:
                try:
                    await self._save_setlist(run, setlist)
                    run.stats.setlists += 1
                except Exception as exc:
                    run.log.warning("setlist_item_failed", setlistfm_id=setlist.setlistfm_id, error=str(exc))
                    run.stats.errors += 1
            run.stats.venues = len(run.venue_ids)
            await self._advance(
                run,
                stage,
                min(0.9, pages / max(max_pages, 1)),
                f"Imported {run.stats.setlists} setlists",
            )

    async def _save_setlist(self, run: _Run, setlist: HistoricalSetlist) -> None:
        artist = run.artist
        venue_id: int | None = None
        venue_name = "unknown venue"
        if setlist.venue is not None:
            venue = await self._db.upsert_venue(source="setlistfm", **setlist.venue.model_dump())
            run.venue_ids.add(venue.id)
            venue_id, venue_name = venue.id, venue.name

        show = await self._db.upsert_show(
            artist_id=artist.id,
            name=f"{artist.name} at {venue_name}",
            show_date=setlist.event_date,
            venue_id=venue_id,
            status="completed",
            setlistfm_id=setlist.setlistfm_id,
        )
        record = await self._db.upsert_actual_setlist(
            show_id=show.id,
            artist_id=artist.id,
            external_id=setlist.setlistfm_id,
            name=setlist.tour_name or f"{artist.name} setlist",
        )

        entries: list[tuple[int, str | None]] = []
        for entry in setlist.songs:
            if entry.tape:
                continue
            key = title_key(entry.name)
            song = await self._db.find_song(artist.id, key)
            if song is None:
                song = await self._db.upsert_song(artist_id=artist.id, title=entry.name, title_key=key)
            note = entry.info or (f"{entry.cover_of} cover" if entry.cover_of else None)
            entries.append((song.id, note))
        await self._db.replace_setlist_songs(record.id, entries)

    # -- finalizing -----------------------------------------------------------

    async def _finalize(self, run: _Run) -> None:
        artist_id = run.artist.id
        await self._db.set_import_status(artist_id, "in_progress")
        await self._advance(run, ImportStage.FINALIZING, 0.0, "Finalizing import")

        try:
            run.stats.predicted_setlists = await self._preseed_predicted_setlists(run)
        except Exception as exc:
            run.log.warning("predicted_setlists_failed", error=str(exc))
            run.stats.errors += 1

        await self._db.set_import_status(artist_id, "completed")
        await self._status.complete_sync(artist_id)
        run.stage = ImportStage.COMPLETED
        run.progress = 100
        s = run.stats
        self._bus.report(
            artist_id,
            ImportStage.COMPLETED,
            100,
            f"Imported {s.songs} songs, {s.shows} shows and {s.setlists} setlists",
        )

    async def _preseed_predicted_setlists(self, run: _Run) -> int:
        """Give every upcoming show without one a predicted setlist of the top songs."""
        artist_id = run.artist.id
        shows = await self._db.list_upcoming_shows_without_prediction(artist_id, today=datetime.now(UTC).date())
        if not shows:
            return 0
        songs = await self._db.top_songs(artist_id, self._config.sync.predicted_setlist_size)
        if not songs:
            return 0

        created = 0
        for show in shows:
            setlist = await self._db.create_predicted_setlist(
                show_id=show.id,
                artist_id=artist_id,
                name=_PREDICTED_SETLIST_NAME,
            )
            if setlist is None:
                continue
            await self._db.replace_setlist_songs(setlist.id, [(song.id, None) for song in songs])
            created += 1
        return created
