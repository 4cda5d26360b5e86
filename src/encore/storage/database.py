"""Async SQLite database for the Encore storage layer.

Every catalog entity is written with ``INSERT ... ON CONFLICT DO UPDATE`` on
its provider identifier, so re-importing the same external entity updates
the existing row instead of adding a duplicate.
"""

from __future__ import annotations

import json
import re
import uuid
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Literal

import aiosqlite

from encore.storage.models import (
    Artist,
    ImportProgress,
    ImportStatus,
    Setlist,
    SetlistSong,
    Show,
    ShowStatus,
    Song,
    SyncField,
    Venue,
)

VenueSource = Literal["ticketmaster", "setlistfm"]

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS artists (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    spotify_id TEXT UNIQUE,
    tm_attraction_id TEXT UNIQUE,
    setlistfm_mbid TEXT UNIQUE,
    image_url TEXT,
    genres TEXT NOT NULL DEFAULT '[]',
    popularity INTEGER NOT NULL DEFAULT 0,
    followers INTEGER NOT NULL DEFAULT 0,
    import_status TEXT CHECK(import_status IN ('initializing', 'in_progress', 'completed', 'failed')),
    import_error TEXT,
    import_started_at TEXT,
    import_updated_at TEXT,
    last_full_sync_at TEXT,
    catalog_synced_at TEXT,
    shows_synced_at TEXT,
    setlists_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artist_id TEXT NOT NULL REFERENCES artists(id),
    spotify_id TEXT,
    title TEXT NOT NULL,
    title_key TEXT NOT NULL,
    album_name TEXT,
    isrc TEXT,
    duration_ms INTEGER,
    popularity INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(spotify_id),
    UNIQUE(artist_id, title_key)
);

CREATE TABLE IF NOT EXISTS venues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tm_venue_id TEXT,
    setlistfm_id TEXT,
    name TEXT NOT NULL,
    city TEXT,
    state TEXT,
    country TEXT,
    latitude REAL,
    longitude REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (tm_venue_id IS NOT NULL OR setlistfm_id IS NOT NULL),
    UNIQUE(tm_venue_id),
    UNIQUE(setlistfm_id)
);

CREATE TABLE IF NOT EXISTS shows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artist_id TEXT NOT NULL REFERENCES artists(id),
    venue_id INTEGER REFERENCES venues(id),
    tm_event_id TEXT,
    setlistfm_id TEXT,
    name TEXT NOT NULL,
    show_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'upcoming' CHECK(status IN ('upcoming', 'completed', 'cancelled')),
    ticket_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (tm_event_id IS NOT NULL OR setlistfm_id IS NOT NULL),
    UNIQUE(tm_event_id),
    UNIQUE(setlistfm_id)
);

CREATE TABLE IF NOT EXISTS setlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    show_id INTEGER NOT NULL REFERENCES shows(id),
    artist_id TEXT NOT NULL REFERENCES artists(id),
    kind TEXT NOT NULL CHECK(kind IN ('predicted', 'actual')),
    external_id TEXT UNIQUE,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_predicted_per_show
    ON setlists(show_id) WHERE kind = 'predicted';

CREATE TABLE IF NOT EXISTS setlist_songs (
    setlist_id INTEGER NOT NULL REFERENCES setlists(id),
    song_id INTEGER NOT NULL REFERENCES songs(id),
    position INTEGER NOT NULL,
    notes TEXT,
    UNIQUE(setlist_id, position)
);

CREATE TABLE IF NOT EXISTS import_progress (
    artist_id TEXT PRIMARY KEY,
    stage TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    message TEXT NOT NULL DEFAULT '',
    error TEXT,
    job_id TEXT,
    started_at TEXT,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
"""

_SYNC_FIELDS: frozenset[str] = frozenset({"catalog_synced_at", "shows_synced_at", "setlists_synced_at"})
_VENUE_KEYS: dict[str, str] = {"ticketmaster": "tm_venue_id", "setlistfm": "setlistfm_id"}
_PROGRESS_FIELDS: frozenset[str] = frozenset(
    {"stage", "progress", "message", "error", "job_id", "started_at", "completed_at"}
)


def _iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(UTC))


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "artist"


class Database:
    """Async SQLite database wrapper for Encore."""

    def __init__(self, path: Path | str) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- artists --------------------------------------------------------------

    async def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug, n = base, 1
        while True:
            cur = await self.conn.execute("SELECT 1 FROM artists WHERE slug = ?", (slug,))
            if await cur.fetchone() is None:
                return slug
            n += 1
            slug = f"{base}-{n}"

    async def create_artist(
        self,
        *,
        name: str,
        artist_id: str | None = None,
        spotify_id: str | None = None,
        tm_attraction_id: str | None = None,
        setlistfm_mbid: str | None = None,
        popularity: int = 0,
    ) -> Artist:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO artists (id, name, slug, spotify_id, tm_attraction_id, setlistfm_mbid,
                                 popularity, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                artist_id or uuid.uuid4().hex,
                name,
                await self._unique_slug(name),
                spotify_id,
                tm_attraction_id,
                setlistfm_mbid,
                popularity,
                now,
                now,
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_artist(row)

    async def upsert_artist_by_attraction(
        self,
        *,
        tm_attraction_id: str,
        name: str,
        image_url: str | None = None,
        genres: list[str] | None = None,
    ) -> Artist:
        """Create the artist for a Ticketmaster attraction, or refresh its name/image."""
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO artists (id, name, slug, tm_attraction_id, image_url, genres, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tm_attraction_id) DO UPDATE SET
                name = excluded.name,
                image_url = COALESCE(excluded.image_url, artists.image_url),
                genres = CASE WHEN excluded.genres = '[]' THEN artists.genres ELSE excluded.genres END,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (
                uuid.uuid4().hex,
                name,
                await self._unique_slug(f"tm-{tm_attraction_id}"),
                tm_attraction_id,
                image_url,
                json.dumps(genres or []),
                now,
                now,
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_artist(row)

    async def get_artist(self, artist_id: str) -> Artist | None:
        cur = await self.conn.execute("SELECT * FROM artists WHERE id = ?", (artist_id,))
        row = await cur.fetchone()
        return self._row_to_artist(row) if row else None

    async def list_artists(self) -> list[Artist]:
        cur = await self.conn.execute("SELECT * FROM artists ORDER BY popularity DESC, name")
        rows = await cur.fetchall()
        return [self._row_to_artist(r) for r in rows]

    async def set_external_ids(
        self,
        artist_id: str,
        *,
        spotify_id: str | None = None,
        tm_attraction_id: str | None = None,
        setlistfm_mbid: str | None = None,
    ) -> Artist:
        """Fill in provider identifiers; ``None`` leaves the stored value alone."""
        cur = await self.conn.execute(
            """
            UPDATE artists SET
                spotify_id = COALESCE(?, spotify_id),
                tm_attraction_id = COALESCE(?, tm_attraction_id),
                setlistfm_mbid = COALESCE(?, setlistfm_mbid),
                updated_at = ?
            WHERE id = ?
            RETURNING *
            """,
            (spotify_id, tm_attraction_id, setlistfm_mbid, _now_iso(), artist_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_artist(row)

    async def update_artist_profile(
        self,
        artist_id: str,
        *,
        image_url: str | None,
        genres: list[str],
        popularity: int | None,
        followers: int | None,
    ) -> None:
        await self.conn.execute(
            """
            UPDATE artists SET
                image_url = COALESCE(?, image_url),
                genres = CASE WHEN ? = '[]' THEN genres ELSE ? END,
                popularity = COALESCE(?, popularity),
                followers = COALESCE(?, followers),
                updated_at = ?
            WHERE id = ?
            """,
            (
                image_url,
                json.dumps(genres),
                json.dumps(genres),
                popularity,
                followers,
                _now_iso(),
                artist_id,
            ),
        )
        await self.conn.commit()

    # -- import record --------------------------------------------------------

    async def claim_import(self, artist_id: str, *, stuck_before: datetime) -> bool:
        """Atomically move the artist to ``initializing`` unless an attempt is live.

        An attempt is live when its status is ``initializing``/``in_progress``
        and it was updated after *stuck_before*.  Returns ``True`` when this
        caller owns the new attempt.
        """
        now = _now_iso()
        cur = await self.conn.execute(
            """
            UPDATE artists SET
                import_status = 'initializing',
                import_error = NULL,
                import_started_at = ?,
                import_updated_at = ?
            WHERE id = ?
              AND (import_status IS NULL
                   OR import_status IN ('completed', 'failed')
                   OR import_updated_at IS NULL
                   OR import_updated_at < ?)
            """,
            (now, now, artist_id, _iso(stuck_before)),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def set_import_status(self, artist_id: str, status: ImportStatus, *, error: str | None = None) -> None:
        now = _now_iso()
        if status == "completed":
            sql = """
                UPDATE artists SET import_status = ?, import_error = ?, import_updated_at = ?,
                                   last_full_sync_at = ?
                WHERE id = ?
            """
            params: tuple = (status, error, now, now, artist_id)
        else:
            sql = "UPDATE artists SET import_status = ?, import_error = ?, import_updated_at = ? WHERE id = ?"
            params = (status, error, now, artist_id)
        await self.conn.execute(sql, params)
        await self.conn.commit()

    async def stamp_sync(self, artist_id: str, field: SyncField) -> None:
        if field not in _SYNC_FIELDS:
            msg = f"Unknown sync field: {field}"
            raise ValueError(msg)
        now = _now_iso()
        await self.conn.execute(
            f"UPDATE artists SET {field} = ?, import_updated_at = ? WHERE id = ?",  # noqa: S608
            (now, now, artist_id),
        )
        await self.conn.commit()

    async def select_for_resync(
        self,
        mode: Literal["all", "stale", "auto"],
        *,
        limit: int,
        max_age: timedelta,
        stuck_after: timedelta,
        force: bool = False,
        now: datetime | None = None,
    ) -> list[Artist]:
        """Pick the artists one resync run should process.

        - ``all``: artists with any provider id, most popular first
        - ``stale``: full sync or an applicable sub-sync older than *max_age*
          (or missing), least recently synced first; *force* drops the age test
        - ``auto``: failed imports and imports stuck for longer than *stuck_after*
        """
        now = now or datetime.now(UTC)
        stale_cutoff = _iso(now - max_age)
        stuck_cutoff = _iso(now - stuck_after)
        has_id = "(spotify_id IS NOT NULL OR tm_attraction_id IS NOT NULL OR setlistfm_mbid IS NOT NULL)"
        not_running = (
            "NOT (import_status IN ('initializing', 'in_progress') "
            "AND import_updated_at IS NOT NULL AND import_updated_at >= :stuck)"
        )

        if mode == "all":
            sql = f"""
                SELECT * FROM artists WHERE {has_id} AND {not_running}
                ORDER BY popularity DESC, name LIMIT :limit
            """
        elif mode == "stale":
            age_test = "1" if force else """(
                last_full_sync_at IS NULL OR last_full_sync_at < :stale
                OR (spotify_id IS NOT NULL AND (catalog_synced_at IS NULL OR catalog_synced_at < :stale))
                OR (tm_attraction_id IS NOT NULL AND (shows_synced_at IS NULL OR shows_synced_at < :stale))
                OR (setlistfm_mbid IS NOT NULL AND (setlists_synced_at IS NULL OR setlists_synced_at < :stale))
            )"""
            sql = f"""
                SELECT * FROM artists WHERE {has_id} AND {not_running} AND {age_test}
                ORDER BY last_full_sync_at IS NOT NULL, last_full_sync_at, popularity DESC
                LIMIT :limit
            """
        elif mode == "auto":
            sql = """
                SELECT * FROM artists
                WHERE import_status = 'failed'
                   OR (import_status IN ('initializing', 'in_progress')
                       AND (import_updated_at IS NULL OR import_updated_at < :stuck))
                ORDER BY popularity DESC, name LIMIT :limit
            """
        else:
            msg = f"Unknown resync mode: {mode}"
            raise ValueError(msg)

        cur = await self.conn.execute(sql, {"limit": limit, "stale": stale_cutoff, "stuck": stuck_cutoff})
        rows = await cur.fetchall()
        return [self._row_to_artist(r) for r in rows]

    # -- songs ----------------------------------------------------------------

    async def upsert_song(
        self,
        *,
        artist_id: str,
        title: str,
        title_key: str,
        spotify_id: str | None = None,
        album_name: str | None = None,
        isrc: str | None = None,
        duration_ms: int | None = None,
        popularity: int | None = None,
    ) -> Song:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO songs (artist_id, spotify_id, title, title_key, album_name, isrc,
                               duration_ms, popularity, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, COALESCE(?, 0), ?, ?)
            ON CONFLICT (spotify_id) DO UPDATE SET
                title = excluded.title,
                title_key = excluded.title_key,
                album_name = COALESCE(excluded.album_name, songs.album_name),
                isrc = COALESCE(excluded.isrc, songs.isrc),
                duration_ms = COALESCE(excluded.duration_ms, songs.duration_ms),
                popularity = excluded.popularity,
                updated_at = excluded.updated_at
            ON CONFLICT (artist_id, title_key) DO UPDATE SET
                spotify_id = COALESCE(excluded.spotify_id, songs.spotify_id),
                album_name = COALESCE(excluded.album_name, songs.album_name),
                isrc = COALESCE(excluded.isrc, songs.isrc),
                duration_ms = COALESCE(excluded.duration_ms, songs.duration_ms),
                popularity = MAX(excluded.popularity, songs.popularity),
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (
                artist_id,
                spotify_id,
                title,
                title_key,
                album_name,
                isrc,
                duration_ms,
                popularity,
                now,
                now,
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_song(row)

    async def find_song(self, artist_id: str, title_key: str) -> Song | None:
        cur = await self.conn.execute(
            "SELECT * FROM songs WHERE artist_id = ? AND title_key = ?",
            (artist_id, title_key),
        )
        row = await cur.fetchone()
        return self._row_to_song(row) if row else None

    async def list_songs(self, artist_id: str) -> list[Song]:
        cur = await self.conn.execute("SELECT * FROM songs WHERE artist_id = ? ORDER BY id", (artist_id,))
        rows = await cur.fetchall()
        return [self._row_to_song(r) for r in rows]

    async def top_songs(self, artist_id: str, limit: int) -> list[Song]:
        """Most popular studio songs that came from the catalog."""
        cur = await self.conn.execute(
            """
            SELECT * FROM songs
            WHERE artist_id = ? AND spotify_id IS NOT NULL
            ORDER BY popularity DESC, id
            LIMIT ?
            """,
            (artist_id, limit),
        )
        rows = await cur.fetchall()
        return [self._row_to_song(r) for r in rows]

    # -- venues ---------------------------------------------------------------

    async def upsert_venue(
        self,
        *,
        source: VenueSource,
        external_id: str,
        name: str,
        city: str | None = None,
        state: str | None = None,
        country: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> Venue:
        key = _VENUE_KEYS[source]
        now = _now_iso()
        cur = await self.conn.execute(
            f"""
            INSERT INTO venues ({key}, name, city, state, country, latitude, longitude, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT ({key}) DO UPDATE SET
                name = excluded.name,
                city = COALESCE(excluded.city, venues.city),
                state = COALESCE(excluded.state, venues.state),
                country = COALESCE(excluded.country, venues.country),
                latitude = COALESCE(excluded.latitude, venues.latitude),
                longitude = COALESCE(excluded.longitude, venues.longitude),
                updated_at = excluded.updated_at
            RETURNING *
            """,  # noqa: S608
            (external_id, name, city, state, country, latitude, longitude, now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_venue(row)

    # -- shows ----------------------------------------------------------------

    async def upsert_show(
        self,
        *,
        artist_id: str,
        name: str,
        show_date: date,
        venue_id: int | None = None,
        status: ShowStatus = "upcoming",
        ticket_url: str | None = None,
        tm_event_id: str | None = None,
        setlistfm_id: str | None = None,
    ) -> Show:
        if tm_event_id is None and setlistfm_id is None:
            msg = "A show needs a Ticketmaster event id or a Setlist.fm id"
            raise ValueError(msg)
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO shows (artist_id, venue_id, tm_event_id, setlistfm_id, name, show_date,
                               status, ticket_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tm_event_id) DO UPDATE SET
                venue_id = COALESCE(excluded.venue_id, shows.venue_id),
                setlistfm_id = COALESCE(excluded.setlistfm_id, shows.setlistfm_id),
                name = excluded.name,
                show_date = excluded.show_date,
                status = excluded.status,
                ticket_url = COALESCE(excluded.ticket_url, shows.ticket_url),
                updated_at = excluded.updated_at
            ON CONFLICT (setlistfm_id) DO UPDATE SET
                venue_id = COALESCE(excluded.venue_id, shows.venue_id),
                tm_event_id = COALESCE(excluded.tm_event_id, shows.tm_event_id),
                name = excluded.name,
                show_date = excluded.show_date,
                status = excluded.status,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (
                artist_id,
                venue_id,
                tm_event_id,
                setlistfm_id,
                name,
                show_date.isoformat(),
                status,
                ticket_url,
                now,
                now,
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_show(row)

    async def list_shows(self, artist_id: str) -> list[Show]:
        cur = await self.conn.execute(
            "SELECT * FROM shows WHERE artist_id = ? ORDER BY show_date, id",
            (artist_id,),
        )
        rows = await cur.fetchall()
        return [self._row_to_show(r) for r in rows]

    async def list_upcoming_shows_without_prediction(self, artist_id: str, *, today: date) -> list[Show]:
        cur = await self.conn.execute(
            """
            SELECT s.* FROM shows s
            WHERE s.artist_id = ? AND s.status = 'upcoming' AND s.show_date >= ?
              AND NOT EXISTS (
                  SELECT 1 FROM setlists sl WHERE sl.show_id = s.id AND sl.kind = 'predicted'
              )
            ORDER BY s.show_date, s.id
            """,
            (artist_id, today.isoformat()),
        )
        rows = await cur.fetchall()
        return [self._row_to_show(r) for r in rows]

    # -- setlists -------------------------------------------------------------

    async def upsert_actual_setlist(self, *, show_id: int, artist_id: str, external_id: str, name: str) -> Setlist:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO setlists (show_id, artist_id, kind, external_id, name, created_at, updated_at)
            VALUES (?, ?, 'actual', ?, ?, ?, ?)
            ON CONFLICT (external_id) DO UPDATE SET
                show_id = excluded.show_id,
                name = excluded.name,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (show_id, artist_id, external_id, name, now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_setlist(row)

    async def create_predicted_setlist(self, *, show_id: int, artist_id: str, name: str) -> Setlist | None:
        """Insert the show's predicted setlist; ``None`` if it already has one."""
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO setlists (show_id, artist_id, kind, name, created_at, updated_at)
            VALUES (?, ?, 'predicted', ?, ?, ?)
            ON CONFLICT (show_id) WHERE kind = 'predicted' DO NOTHING
            RETURNING *
            """,
            (show_id, artist_id, name, now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_setlist(row) if row else None

    async def replace_setlist_songs(self, setlist_id: int, entries: list[tuple[int, str | None]]) -> None:
        """Write ``(song_id, notes)`` entries at positions 1..n and drop any beyond n."""
        for position, (song_id, notes) in enumerate(entries, start=1):
            await self.conn.execute(
                """
                INSERT INTO setlist_songs (setlist_id, song_id, position, notes)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (setlist_id, position) DO UPDATE SET
                    song_id = excluded.song_id,
                    notes = excluded.notes
                """,
                (setlist_id, song_id, position, notes),
            )
        await self.conn.execute(
            "DELETE FROM setlist_songs WHERE setlist_id = ? AND position > ?",
            (setlist_id, len(entries)),
        )
        await self.conn.commit()

    async def list_setlists(self, artist_id: str) -> list[Setlist]:
        cur = await self.conn.execute("SELECT * FROM setlists WHERE artist_id = ? ORDER BY id", (artist_id,))
        rows = await cur.fetchall()
        return [self._row_to_setlist(r) for r in rows]

    async def list_setlist_songs(self, setlist_id: int) -> list[SetlistSong]:
        cur = await self.conn.execute(
            "SELECT * FROM setlist_songs WHERE setlist_id = ? ORDER BY position",
            (setlist_id,),
        )
        rows = await cur.fetchall()
        return [
            SetlistSong(setlist_id=r["setlist_id"], song_id=r["song_id"], position=r["position"], notes=r["notes"])
            for r in rows
        ]

    # -- import_progress ------------------------------------------------------

    async def get_progress(self, artist_id: str) -> ImportProgress | None:
        cur = await self.conn.execute("SELECT * FROM import_progress WHERE artist_id = ?", (artist_id,))
        row = await cur.fetchone()
        return self._row_to_progress(row) if row else None

    async def save_progress(self, progress: ImportProgress) -> ImportProgress:
        """Insert or fully replace an artist's progress snapshot."""
        cur = await self.conn.execute(
            """
            INSERT INTO import_progress (artist_id, stage, progress, message, error, job_id,
                                         started_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (artist_id) DO UPDATE SET
                stage = excluded.stage,
                progress = excluded.progress,
                message = excluded.message,
                error = excluded.error,
                job_id = excluded.job_id,
                started_at = excluded.started_at,
                updated_at = excluded.updated_at,
                completed_at = excluded.completed_at
            RETURNING *
            """,
            (
                progress.artist_id,
                progress.stage,
                progress.progress,
                progress.message,
                progress.error,
                progress.job_id,
                _iso(progress.started_at) if progress.started_at else None,
                _iso(progress.updated_at) if progress.updated_at else _now_iso(),
                _iso(progress.completed_at) if progress.completed_at else None,
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_progress(row)

    async def delete_progress_before(self, cutoff: datetime) -> int:
        cur = await self.conn.execute("DELETE FROM import_progress WHERE updated_at < ?", (_iso(cutoff),))
        await self.conn.commit()
        return cur.rowcount

    # -- stats ----------------------------------------------------------------

    async def get_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in ("artists", "songs", "venues", "shows", "setlists"):
            cur = await self.conn.execute(f"SELECT COUNT(*) FROM {table}")  # noqa: S608
            row = await cur.fetchone()
            counts[table] = row[0]
        return counts

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_artist(row: aiosqlite.Row) -> Artist:
        return Artist(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            spotify_id=row["spotify_id"],
            tm_attraction_id=row["tm_attraction_id"],
            setlistfm_mbid=row["setlistfm_mbid"],
            image_url=row["image_url"],
            genres=json.loads(row["genres"] or "[]"),
            popularity=row["popularity"],
            followers=row["followers"],
            import_status=row["import_status"],
            import_error=row["import_error"],
            import_started_at=row["import_started_at"],
            import_updated_at=row["import_updated_at"],
            last_full_sync_at=row["last_full_sync_at"],
            catalog_synced_at=row["catalog_synced_at"],
            shows_synced_at=row["shows_synced_at"],
            setlists_synced_at=row["setlists_synced_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_song(row: aiosqlite.Row) -> Song:
        return Song(
            id=row["id"],
            artist_id=row["artist_id"],
            spotify_id=row["spotify_id"],
            title=row["title"],
            title_key=row["title_key"],
            album_name=row["album_name"],
            isrc=row["isrc"],
            duration_ms=row["duration_ms"],
            popularity=row["popularity"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_venue(row: aiosqlite.Row) -> Venue:
        return Venue(
            id=row["id"],
            tm_venue_id=row["tm_venue_id"],
            setlistfm_id=row["setlistfm_id"],
            name=row["name"],
            city=row["city"],
            state=row["state"],
            country=row["country"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_show(row: aiosqlite.Row) -> Show:
        return Show(
            id=row["id"],
            artist_id=row["artist_id"],
            venue_id=row["venue_id"],
            tm_event_id=row["tm_event_id"],
            setlistfm_id=row["setlistfm_id"],
            name=row["name"],
            show_date=row["show_date"],
            status=row["status"],
            ticket_url=row["ticket_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_setlist(row: aiosqlite.Row) -> Setlist:
        return Setlist(
            id=row["id"],
            show_id=row["show_id"],
            artist_id=row["artist_id"],
            kind=row["kind"],
            external_id=row["external_id"],
            name=row["name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_progress(row: aiosqlite.Row) -> ImportProgress:
        return ImportProgress(
            artist_id=row["artist_id"],
            stage=row["stage"],
            progress=row["progress"],
            message=row["message"],
            error=row["error"],
            job_id=row["job_id"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )
