"""Tests for SpotifyClient using httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest
from pydantic import SecretStr

from encore.config import SpotifyConfig
from encore.errors import NotFoundError, ProviderAuthError
from encore.providers.models import CatalogAlbum
from encore.providers.spotify import SpotifyClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_config() -> SpotifyConfig:
    return SpotifyConfig(client_id="test-client-id", client_secret=SecretStr("test-client-secret"))


def _token_response() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "mock-access-token", "token_type": "Bearer", "expires_in": 3600})


def _artist_item(artist_id: str, name: str, popularity: int = 50) -> dict:
    return {
        "id": artist_id,
        "name": name,
        "genres": ["rock"],
        "popularity": popularity,
        "followers": {"total": 1234},
        "images": [{"url": f"https://img/{artist_id}.jpg"}],
        "external_urls": {"spotify": f"https://open.spotify.com/artist/{artist_id}"},
    }


def _album_item(album_id: str, name: str) -> dict:
    return {"id": album_id, "name": name, "album_type": "album", "release_date": "2020-01-01", "total_tracks": 2}


def _client(handler, config: SpotifyConfig | None = None) -> SpotifyClient:
    return SpotifyClient(config or _make_config(), backoff_base=0, _transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_token_fetched_once_and_sent_as_bearer() -> None:
    calls: list[str] = []
    auth_headers: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            calls.append("token")
            assert request.headers["Authorization"].startswith("Basic ")
            return _token_response()
        auth_headers.append(request.headers["Authorization"])
        return httpx.Response(200, json=_artist_item("a1", "Muse"))

    async with _client(handler) as client:
        await client.get_artist("a1")
        await client.get_artist("a1")

    assert calls == ["token"]
    assert auth_headers == ["Bearer mock-access-token"] * 2


@pytest.mark.asyncio
async def test_401_forces_token_refresh() -> None:
    token_calls = 0
    api_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal token_calls, api_calls
        if request.url.host == "accounts.spotify.com":
            token_calls += 1
            return _token_response()
        api_calls += 1
        if api_calls == 1:
            return httpx.Response(401, json={"error": "expired"})
        return httpx.Response(200, json=_artist_item("a1", "Muse"))

    async with _client(handler) as client:
        artist = await client.get_artist("a1")

    assert artist.name == "Muse"
    assert token_calls == 2


@pytest.mark.asyncio
async def test_missing_credentials_raise_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    async with _client(handler, SpotifyConfig()) as client:
        with pytest.raises(ProviderAuthError):
            await client.get_artist("a1")


@pytest.mark.asyncio
async def test_rejected_token_request_raises_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_client"})

    async with _client(handler) as client:
        with pytest.raises(ProviderAuthError):
            await client.get_artist("a1")


# ---------------------------------------------------------------------------
# Search / lookup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_artists_maps_candidates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return _token_response()
        assert request.url.path == "/v1/search"
        assert request.url.params["type"] == "artist"
        assert request.url.params["q"] == "Muse"
        return httpx.Response(200, json={"artists": {"items": [_artist_item("a1", "Muse", 80)]}})

    async with _client(handler) as client:
        candidates = await client.search_artists("Muse")

    assert len(candidates) == 1
    c = candidates[0]
    assert c.provider == "spotify"
    assert c.external_id == "a1"
    assert c.popularity == 80
    assert c.followers == 1234
    assert c.image_url == "https://img/a1.jpg"


@pytest.mark.asyncio
async def test_search_without_results_raises_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return _token_response()
        return httpx.Response(200, json={"artists": {"items": []}})

    async with _client(handler) as client:
        with pytest.raises(NotFoundError):
            await client.search_artists("Nobody")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_iter_catalog_follows_next_links() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return _token_response()
        if request.url.params.get("offset") == "50":
            return httpx.Response(200, json={"items": [_album_item("al3", "Third")], "next": None})
        assert request.url.params["include_groups"] == "album,single"
        return httpx.Response(
            200,
            json={
                "items": [_album_item("al1", "First"), _album_item("al2", "Second")],
                "next": "https://api.spotify.com/v1/artists/a1/albums?offset=50&limit=50",
            },
        )

    async with _client(handler) as client:
        albums = [album async for album in client.iter_catalog("a1")]

    assert [a.spotify_id for a in albums] == ["al1", "al2", "al3"]


@pytest.mark.asyncio
async def test_iter_album_tracks_carries_album_name() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return _token_response()
        return httpx.Response(
            200,
            json={
                "items": [
                    {"id": "t1", "name": "Uprising", "duration_ms": 300000, "track_number": 1},
                    {"id": None, "name": "Local file"},
                ],
                "next": None,
            },
        )

    album = CatalogAlbum(spotify_id="al1", name="The Resistance")
    async with _client(handler) as client:
        tracks = [t async for t in client.iter_album_tracks(album)]

    assert len(tracks) == 1
    assert tracks[0].album_name == "The Resistance"
    assert tracks[0].album_id == "al1"


@pytest.mark.asyncio
async def test_get_tracks_batches_by_fifty() -> None:
    batches: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "accounts.spotify.com":
            return _token_response()
        ids = request.url.params["ids"].split(",")
        batches.append(len(ids))
        return httpx.Response(
            200,
            json={
                "tracks": [
                    {
                        "id": i,
                        "name": f"Song {i}",
                        "popularity": 10,
                        "external_ids": {"isrc": f"ISRC{i}"},
                        "album": {"id": "al", "name": "Album"},
                    }
                    for i in ids
                ]
            },
        )

    ids = [f"t{i}" for i in range(120)]
    async with _client(handler) as client:
        tracks = await client.get_tracks(ids)

    assert batches == [50, 50, 20]
    assert len(tracks) == 120
    assert tracks[0].isrc == "ISRCt0"
    assert tracks[0].album_name == "Album"
