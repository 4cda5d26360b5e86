"""Normalized provider results, independent of any one provider's JSON shape."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

ProviderName = Literal["spotify", "ticketmaster", "setlistfm"]


class ArtistCandidate(BaseModel):
    """An artist as returned by a provider search or lookup."""

    provider: ProviderName
    external_id: str
    name: str
    image_url: str | None = None
    genres: list[str] = Field(default_factory=list)
    popularity: int | None = None
    followers: int | None = None
    url: str | None = None


class CatalogAlbum(BaseModel):
    spotify_id: str
    name: str
    album_type: str = "album"
    release_date: str | None = None
    total_tracks: int = 0


class CatalogTrack(BaseModel):
    spotify_id: str
    name: str
    album_id: str | None = None
    album_name: str | None = None
    duration_ms: int | None = None
    popularity: int | None = None
    isrc: str | None = None
    track_number: int | None = None


class VenueInfo(BaseModel):
    """A venue as seen by Ticketmaster or Setlist.fm."""

    external_id: str
    name: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class Event(BaseModel):
    """One Ticketmaster event (a show)."""

    tm_event_id: str
    name: str
    event_date: date
    starts_at: datetime | None = None
    ticket_url: str | None = None
    venue: VenueInfo | None = None


class SetlistEntry(BaseModel):
    name: str
    info: str | None = None
    cover_of: str | None = None
    tape: bool = False


class HistoricalSetlist(BaseModel):
    """A performed setlist from Setlist.fm."""

    setlistfm_id: str
    event_date: date
    venue: VenueInfo | None = None
    tour_name: str | None = None
    url: str | None = None
    songs: list[SetlistEntry] = Field(default_factory=list)
