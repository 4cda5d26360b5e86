"""Async Setlist.fm REST client (API 1.0).

Setlist.fm allows two requests per second per key and answers 404 when a
search or an artist's setlist listing is empty.
"""

from __future__ import annotations

import math
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import httpx
import structlog

from encore.config import SetlistFmConfig
from encore.errors import NotFoundError, ProviderAuthError
from encore.providers.base import ProviderClient
from encore.providers.models import ArtistCandidate, HistoricalSetlist, SetlistEntry, VenueInfo
from encore.providers.ratelimit import RateLimiter

log = structlog.get_logger(__name__)

_API_BASE = "https://api.setlist.fm/rest/1.0"


def _venue_from_json(item: dict[str, Any]) -> VenueInfo | None:
    if not item.get("id"):
        return None
    city = item.get("city") or {}
    coords = city.get("coords") or {}
    return VenueInfo(
        external_id=item["id"],
        name=item.get("name") or "Unknown venue",
        city=city.get("name"),
        state=city.get("stateCode"),
        country=(city.get("country") or {}).get("code"),
        latitude=coords.get("lat"),
        longitude=coords.get("long"),
    )


def _setlist_from_json(item: dict[str, Any]) -> HistoricalSetlist:
    songs: list[SetlistEntry] = []
    for set_ in (item.get("sets") or {}).get("set") or []:
        for song in set_.get("song") or []:
            if not song.get("name"):
                continue
            songs.append(
                SetlistEntry(
                    name=song["name"],
                    info=song.get("info"),
                    cover_of=(song.get("cover") or {}).get("name"),
                    tape=bool(song.get("tape")),
                )
            )
    return HistoricalSetlist(
        setlistfm_id=item["id"],
        event_date=datetime.strptime(item["eventDate"], "%d-%m-%Y").date(),
        venue=_venue_from_json(item.get("venue") or {}),
        tour_name=(item.get("tour") or {}).get("name"),
        url=item.get("url"),
        songs=songs,
    )


class SetlistFmClient(ProviderClient):
    """Setlist.fm client; the key travels in the ``x-api-key`` header."""

    provider = "setlistfm"
    base_url = _API_BASE

    def __init__(
        self,
        config: SetlistFmConfig,
        *,
        limiter: RateLimiter | None = None,
        backoff_base: float = 1.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            limiter=limiter or RateLimiter.for_setlistfm(),
            backoff_base=backoff_base,
            _transport=_transport,
        )
        self._config = config

    async def _auth_headers(self, *, force: bool = False) -> dict[str, str]:  # noqa: ARG002
        key = self._config.api_key.get_secret_value()
        if not key:
            raise ProviderAuthError(self.provider, "api_key not configured")
        return {"x-api-key": key}

    async def search_artists(self, name: str) -> list[ArtistCandidate]:
        """Search artists by name; raises :class:`NotFoundError` on zero hits."""
        data = await self._get_json("/search/artists", {"artistName": name, "p": 1, "sort": "relevance"})
        items = data.get("artist") or []
        if not items:
            raise NotFoundError(self.provider, f"no artist matches {name!r}")
        return [
            ArtistCandidate(provider="setlistfm", external_id=item["mbid"], name=item["name"], url=item.get("url"))
            for item in items
            if item.get("mbid")
        ]

    async def iter_artist_setlists(
        self,
        mbid: str,
        *,
        max_pages: int | None = None,
    ) -> AsyncIterator[list[HistoricalSetlist]]:
        """Yield pages of an artist's setlists, newest first."""
        page = 1
        while True:
            try:
                data = await self._get_json(f"/artist/{mbid}/setlists", {"p": page})
            except NotFoundError:
                if page == 1:
                    log.info("setlistfm_no_setlists", mbid=mbid)
                break

            items = data.get("setlist") or []
            setlists: list[HistoricalSetlist] = []
            for item in items:
                try:
                    setlists.append(_setlist_from_json(item))
                except (KeyError, ValueError) as exc:
                    log.debug("setlistfm_setlist_skipped", setlist_id=item.get("id"), error=str(exc))
            if setlists:
                yield setlists

            per_page = data.get("itemsPerPage") or 20
            total_pages = math.ceil((data.get("total") or 0) / per_page)
            if not items or page >= total_pages or (max_pages is not None and page >= max_pages):
                break
            page += 1
