"""Async Ticketmaster Discovery API client.

Endpoints:
- GET /attractions.json?keyword= (artist search)
- GET /attractions/{id}.json
- GET /events.json?attractionId= (paged via ``page.totalPages``)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, date, datetime
from typing import Any

import httpx
import structlog

from encore.config import TicketmasterConfig
from encore.errors import NotFoundError
from encore.providers.base import ProviderClient
from encore.providers.models import ArtistCandidate, Event, VenueInfo
from encore.providers.ratelimit import RateLimiter

log = structlog.get_logger(__name__)

_API_BASE = "https://app.ticketmaster.com/discovery/v2"
_PAGE_SIZE = 200
_SEARCH_LIMIT = 10
# Discovery API refuses deep paging past 1000 results.
_MAX_PAGES = 5


def _best_image(images: list[dict[str, Any]]) -> str | None:
    if not images:
        return None
    return max(images, key=lambda img: img.get("width") or 0).get("url")


def _attraction_from_json(item: dict[str, Any]) -> ArtistCandidate:
    genres = [
        c["genre"]["name"]
        for c in item.get("classifications") or []
        if (c.get("genre") or {}).get("name") and c["genre"]["name"] != "Undefined"
    ]
    return ArtistCandidate(
        provider="ticketmaster",
        external_id=item["id"],
        name=item["name"],
        image_url=_best_image(item.get("images") or []),
        genres=genres,
        url=item.get("url"),
    )


def _float(raw: object) -> float | None:
    try:
        return float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _venue_from_json(item: dict[str, Any]) -> VenueInfo | None:
    if not item.get("id"):
        return None
    location = item.get("location") or {}
    return VenueInfo(
        external_id=item["id"],
        name=item.get("name") or "Unknown venue",
        city=(item.get("city") or {}).get("name"),
        state=(item.get("state") or {}).get("stateCode"),
        country=(item.get("country") or {}).get("countryCode"),
        latitude=_float(location.get("latitude")),
        longitude=_float(location.get("longitude")),
    )


def _event_from_json(item: dict[str, Any]) -> Event | None:
    """Map one event, or ``None`` when it lacks a usable date."""
    start = (item.get("dates") or {}).get("start") or {}
    starts_at: datetime | None = None
    if start.get("dateTime"):
        starts_at = datetime.fromisoformat(start["dateTime"].replace("Z", "+00:00"))
    if start.get("localDate"):
        event_date = date.fromisoformat(start["localDate"])
    elif starts_at is not None:
        event_date = starts_at.date()
    else:
        return None

    venues = (item.get("_embedded") or {}).get("venues") or []
    return Event(
        tm_event_id=item["id"],
        name=item.get("name") or "",
        event_date=event_date,
        starts_at=starts_at,
        ticket_url=item.get("url"),
        venue=_venue_from_json(venues[0]) if venues else None,
    )


class TicketmasterClient(ProviderClient):
    """Discovery API client; the key travels as the ``apikey`` query parameter."""

    provider = "ticketmaster"
    base_url = _API_BASE

    def __init__(
        self,
        config: TicketmasterConfig,
        *,
        limiter: RateLimiter | None = None,
        backoff_base: float = 1.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            limiter=limiter or RateLimiter.for_ticketmaster(),
            backoff_base=backoff_base,
            _transport=_transport,
        )
        self._config = config

    def _auth_params(self) -> dict[str, str]:
        return {"apikey": self._config.api_key.get_secret_value()}

    async def search_attractions(self, name: str) -> list[ArtistCandidate]:
        """Search music attractions by keyword; raises :class:`NotFoundError` on zero hits."""
        data = await self._get_json(
            "/attractions.json",
            {"keyword": name, "classificationName": "music", "size": _SEARCH_LIMIT},
        )
        items = (data.get("_embedded") or {}).get("attractions") or []
        if not items:
            raise NotFoundError(self.provider, f"no attraction matches {name!r}")
        return [_attraction_from_json(item) for item in items]

    async def get_attraction(self, attraction_id: str) -> ArtistCandidate:
        return _attraction_from_json(await self._get_json(f"/attractions/{attraction_id}.json"))

    async def iter_events_by_attraction(
        self,
        attraction_id: str,
        *,
        include_past: bool = False,
        now: datetime | None = None,
    ) -> AsyncIterator[list[Event]]:
        """Yield pages of events for an attraction, future-only unless *include_past*."""
        params: dict[str, Any] = {
            "attractionId": attraction_id,
            "size": _PAGE_SIZE,
            "sort": "date,asc",
        }
        if not include_past:
            start = (now or datetime.now(UTC)).astimezone(UTC).replace(microsecond=0)
            params["startDateTime"] = start.strftime("%Y-%m-%dT%H:%M:%SZ")

        page = 0
        while page < _MAX_PAGES:
            data = await self._get_json("/events.json", {**params, "page": page})
            items = (data.get("_embedded") or {}).get("events") or []
            events: list[Event] = []
            for item in items:
                try:
                    event = _event_from_json(item)
                except (KeyError, ValueError) as exc:
                    log.warning("ticketmaster_event_skipped", event_id=item.get("id"), error=str(exc))
                    continue
                if event is None:
                    log.debug("ticketmaster_event_skipped", event_id=item.get("id"), reason="no date")
                    continue
                events.append(event)
            if events:
                yield events

            total_pages = (data.get("page") or {}).get("totalPages", 0)
            page += 1
            if not items or page >= total_pages:
                break
