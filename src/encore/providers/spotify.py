"""Async Spotify Web API client (client-credentials flow).

Endpoints:
- GET /search?type=artist
- GET /artists/{id}
- GET /artists/{id}/albums (include_groups=album,single, limit 50)
- GET /albums/{id}/tracks (limit 50)
- GET /tracks?ids= (max 50 ids)
"""

from __future__ import annotations

import base64
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from encore.config import SpotifyConfig
from encore.errors import NotFoundError, ProviderAuthError, UpstreamError
from encore.providers.base import ProviderClient
from encore.providers.models import ArtistCandidate, CatalogAlbum, CatalogTrack
from encore.providers.ratelimit import RateLimiter

_API_BASE = "https://api.spotify.com/v1"
_TOKEN_URL = "https://accounts.spotify.com/api/token"  # noqa: S105
_PAGE_SIZE = 50
_BATCH_SIZE = 50
_SEARCH_LIMIT = 10


def _artist_from_json(item: dict[str, Any]) -> ArtistCandidate:
    images = item.get("images") or []
    return ArtistCandidate(
        provider="spotify",
        external_id=item["id"],
        name=item["name"],
        image_url=images[0]["url"] if images else None,
        genres=item.get("genres") or [],
        popularity=item.get("popularity"),
        followers=(item.get("followers") or {}).get("total"),
        url=(item.get("external_urls") or {}).get("spotify"),
    )


def _track_from_json(item: dict[str, Any], album: CatalogAlbum | None = None) -> CatalogTrack:
    album_json = item.get("album") or {}
    return CatalogTrack(
        spotify_id=item["id"],
        name=item["name"],
        album_id=album.spotify_id if album else album_json.get("id"),
        album_name=album.name if album else album_json.get("name"),
        duration_ms=item.get("duration_ms"),
        popularity=item.get("popularity"),
        isrc=(item.get("external_ids") or {}).get("isrc"),
        track_number=item.get("track_number"),
    )


class SpotifyClient(ProviderClient):
    """Spotify catalog client with a cached app access token."""

    provider = "spotify"
    base_url = _API_BASE
    refreshes_token = True

    def __init__(
        self,
        config: SpotifyConfig,
        *,
        limiter: RateLimiter | None = None,
        backoff_base: float = 1.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            limiter=limiter or RateLimiter.for_spotify(),
            backoff_base=backoff_base,
            _transport=_transport,
        )
        self._config = config
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0

    # -- auth --

    async def _ensure_token(self, *, force: bool = False) -> str:
        if not force and self._access_token and time.time() < self._token_expires_at - 60:
            return self._access_token

        if not self._config.client_id or not self._config.client_secret.get_secret_value():
            raise ProviderAuthError(self.provider, "client_id/client_secret not configured")

        basic = base64.b64encode(
            f"{self._config.client_id}:{self._config.client_secret.get_secret_value()}".encode()
        ).decode()
        try:
            resp = await self.client.post(
                _TOKEN_URL,
                data={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {basic}"},
            )
        except httpx.TransportError as exc:
            raise UpstreamError(self.provider, f"token request failed: {exc}", retryable=True) from exc
        if resp.status_code != 200:
            raise ProviderAuthError(
                self.provider,
                f"token request failed: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

        data = resp.json()
        self._access_token = data["access_token"]
        self._token_expires_at = time.time() + data.get("expires_in", 3600)
        return self._access_token

    async def _auth_headers(self, *, force: bool = False) -> dict[str, str]:
        token = await self._ensure_token(force=force)
        return {"Authorization": f"Bearer {token}"}

    # -- public API --

    async def search_artists(self, name: str) -> list[ArtistCandidate]:
        """Search artists by name; raises :class:`NotFoundError` on zero hits."""
        data = await self._get_json("/search", {"q": name, "type": "artist", "limit": _SEARCH_LIMIT})
        items = (data.get("artists") or {}).get("items") or []
        if not items:
            raise NotFoundError(self.provider, f"no artist matches {name!r}")
        return [_artist_from_json(item) for item in items]

    async def get_artist(self, spotify_id: str) -> ArtistCandidate:
        return _artist_from_json(await self._get_json(f"/artists/{spotify_id}"))

    async def iter_catalog(self, spotify_id: str) -> AsyncIterator[CatalogAlbum]:
        """Yield the artist's albums and singles, following ``next`` links.

        Each call starts again from the first page.
        """
        url: str | None = f"/artists/{spotify_id}/albums"
        params: dict[str, Any] | None = {
            "include_groups": "album,single",
            "limit": _PAGE_SIZE,
            "market": self._config.market,
        }
        while url:
            data = await self._get_json(url, params)
            for item in data.get("items") or []:
                yield CatalogAlbum(
                    spotify_id=item["id"],
                    name=item["name"],
                    album_type=item.get("album_type", "album"),
                    release_date=item.get("release_date"),
                    total_tracks=item.get("total_tracks", 0),
                )
            # ``next`` already carries the query string
            url, params = data.get("next"), None

    async def iter_album_tracks(self, album: CatalogAlbum) -> AsyncIterator[CatalogTrack]:
        url: str | None = f"/albums/{album.spotify_id}/tracks"
        params: dict[str, Any] | None = {"limit": _PAGE_SIZE, "market": self._config.market}
        while url:
            data = await self._get_json(url, params)
            for item in data.get("items") or []:
                if item.get("id"):
                    yield _track_from_json(item, album)
            url, params = data.get("next"), None

    async def get_tracks(self, track_ids: list[str]) -> list[CatalogTrack]:
        """Fetch full track objects (ISRC, popularity) in batches of 50."""
        tracks: list[CatalogTrack] = []
        for i in range(0, len(track_ids), _BATCH_SIZE):
            batch = track_ids[i : i + _BATCH_SIZE]
            data = await self._get_json("/tracks", {"ids": ",".join(batch), "market": self._config.market})
            tracks.extend(_track_from_json(item) for item in data.get("tracks") or [] if item)
        return tracks
