"""Pydantic models for the Encore storage layer."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

ImportStatus = Literal["initializing", "in_progress", "completed", "failed"]
ShowStatus = Literal["upcoming", "completed", "cancelled"]
SetlistKind = Literal["predicted", "actual"]
SyncField = Literal["catalog_synced_at", "shows_synced_at", "setlists_synced_at"]


class Artist(BaseModel):
    """An artist row, including its import record columns."""

    id: str
    name: str
    slug: str
    spotify_id: str | None = None
    tm_attraction_id: str | None = None
    setlistfm_mbid: str | None = None
    image_url: str | None = None
    genres: list[str] = Field(default_factory=list)
    popularity: int = 0
    followers: int = 0

    import_status: ImportStatus | None = None
    import_error: str | None = None
    import_started_at: datetime | None = None
    import_updated_at: datetime | None = None
    last_full_sync_at: datetime | None = None
    catalog_synced_at: datetime | None = None
    shows_synced_at: datetime | None = None
    setlists_synced_at: datetime | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_external_id(self) -> bool:
        return bool(self.spotify_id or self.tm_attraction_id or self.setlistfm_mbid)


class Song(BaseModel):
    id: int | None = None
    artist_id: str
    spotify_id: str | None = None
    title: str
    title_key: str
    album_name: str | None = None
    isrc: str | None = None
    duration_ms: int | None = None
    popularity: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Venue(BaseModel):
    id: int | None = None
    tm_venue_id: str | None = None
    setlistfm_id: str | None = None
    name: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Show(BaseModel):
    id: int | None = None
    artist_id: str
    venue_id: int | None = None
    tm_event_id: str | None = None
    setlistfm_id: str | None = None
    name: str
    show_date: date
    status: ShowStatus = "upcoming"
    ticket_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Setlist(BaseModel):
    """A predicted (pre-seeded) or actual (performed) setlist for a show."""

    id: int | None = None
    show_id: int
    artist_id: str
    kind: SetlistKind
    external_id: str | None = None
    name: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SetlistSong(BaseModel):
    setlist_id: int
    song_id: int
    position: int
    notes: str | None = None


class ImportProgress(BaseModel):
    """Latest progress snapshot of one artist's import."""

    artist_id: str
    stage: str
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    error: str | None = None
    job_id: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
