"""Encore storage layer: async SQLite for artists, catalog, shows, setlists and import state."""

from encore.storage.database import Database
from encore.storage.models import (
    Artist,
    ImportProgress,
    Setlist,
    SetlistSong,
    Show,
    Song,
    Venue,
)

__all__ = [
    "Artist",
    "Database",
    "ImportProgress",
    "Setlist",
    "SetlistSong",
    "Show",
    "Song",
    "Venue",
]
