"""Tests for the Jellyfin and Emby adapters."""

from __future__ import annotations

from datetime import date, datetime
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from mediasync.config import Settings
from mediasync.database import Database
from mediasync.exceptions import SourceRequestError
from mediasync.models import QueryOptions, SourceConfig
from mediasync.repository import SourceRepository
from mediasync.services import jellyfin
from mediasync.services.jellyfin import (
    EmbyAdapter,
    EmbyAdapterFactory,
    JellyfinAdapter,
    JellyfinAdapterFactory,
)

CONFIG = SourceConfig(
    id=3,
    user_id=1,
    source_type="jellyfin",
    name="Den",
    base_url="http://jellyfin.local",
    api_key="secret-token",
    remote_user_id="u1",
)


def _movie(item_id: str, name: str, **extra: Any) -> dict[str, Any]:
    payload = {
        "Id": item_id,
        "Name": name,
        "Type": "Movie",
        "ProductionYear": 2016,
        "PremiereDate": "2016-11-11T00:00:00.0000000Z",
        "Genres": ["Drama", "Sci-Fi"],
        "RunTimeTicks": 69_600_000_000,
        "ProviderIds": {"Imdb": "tt2543164", "Tmdb": "329865", "Empty": ""},
    }
    payload.update(extra)
    return payload


@pytest.mark.anyio("asyncio")
async def test_get_movies_follows_pages() -> None:
    requests: list[httpx.Request] = []
    catalog = [_movie("a", "Arrival"), _movie("b", "Sicario"), _movie("c", "Dune")]

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        start = int(request.url.params["StartIndex"])
        limit = int(request.url.params["Limit"])
        return httpx.Response(
            200,
            json={"Items": catalog[start : start + limit], "TotalRecordCount": len(catalog)},
        )

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        adapter = JellyfinAdapter(CONFIG, http_client, page_size=2)
        movies = await adapter.get_movies()

    assert [item.title for item in movies] == ["Arrival", "Sicario", "Dune"]
    assert len(requests) == 2
    assert requests[0].url.path == "/Users/u1/Items"
    assert requests[0].url.params["IncludeItemTypes"] == "Movie"
    assert requests[0].headers["X-Emby-Token"] == "secret-token"

    arrival = movies[0]
    assert arrival.release_year == 2016
    assert arrival.release_date == date(2016, 11, 11)
    assert arrival.payload.duration_seconds == 6_960
    assert arrival.source_item_id(3) == "a"
    assert arrival.source_mappings[0].source_type == "jellyfin"
    assert {(e.catalog_name, e.catalog_id) for e in arrival.external_ids} == {
        ("imdb", "tt2543164"),
        ("tmdb", "329865"),
    }


@pytest.mark.anyio("asyncio")
async def test_limit_caps_the_listing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        limit = int(request.url.params["Limit"])
        return httpx.Response(
            200,
            json={"Items": [_movie(str(i), f"Movie {i}") for i in range(limit)], "TotalRecordCount": 50},
        )

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        adapter = JellyfinAdapter(CONFIG, http_client, page_size=4)
        movies = await adapter.get_movies(QueryOptions(limit=6))

    assert len(movies) == 6


@pytest.mark.anyio("asyncio")
async def test_music_brainz_ids_match_the_item_kind() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "Items": [
                    {
                        "Id": "t1",
                        "Name": "Teardrop",
                        "Type": "Audio",
                        "IndexNumber": 3,
                        "Album": "Mezzanine",
                        "Artists": ["Massive Attack"],
                        "ProviderIds": {
                            "MusicBrainzTrack": "mb-track",
                            "MusicBrainzAlbum": "mb-album",
                        },
                    }
                ],
                "TotalRecordCount": 1,
            },
        )

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        (song,) = await JellyfinAdapter(CONFIG, http_client).get_tracks()

    assert song.type == "track"
    assert song.payload.artist_name == "Massive Attack"
    assert song.payload.number == 3
    assert song.external_id("musicbrainz") == "mb-track"
    assert len(song.external_ids) == 1


@pytest.mark.anyio("asyncio")
async def test_playlists_are_listed_with_their_size() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "Items": [
                    {"Id": "pl1", "Name": "Road Trip", "Type": "Playlist", "ChildCount": 24},
                    {"Id": "bs1", "Name": "Trilogy", "Type": "BoxSet", "ChildCount": 3},
                ],
                "TotalRecordCount": 2,
            },
        )

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        adapter = JellyfinAdapter(CONFIG, http_client)
        playlists = await adapter.get_playlists()

    assert adapter.supports_playlists()
    assert seen[0].url.params["IncludeItemTypes"] == "Playlist"
    (road_trip,) = playlists
    assert road_trip.type == "playlist"
    assert road_trip.title == "Road Trip"
    assert road_trip.payload.item_count == 24
    assert road_trip.source_item_id(3) == "pl1"


@pytest.mark.anyio("asyncio")
async def test_play_history_maps_user_data() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "Items": [
                    _movie(
                        "a",
                        "Arrival",
                        UserData={
                            "Played": True,
                            "PlayCount": 2,
                            "PlaybackPositionTicks": 0,
                            "IsFavorite": True,
                            "LastPlayedDate": "2024-02-10T21:00:00.0000000Z",
                        },
                    ),
                    {
                        "Id": "e1",
                        "Name": "Pilot",
                        "Type": "Episode",
                        "IndexNumber": 1,
                        "ParentIndexNumber": 1,
                        "SeriesName": "Dark",
                        "SeriesId": "s1",
                        "RunTimeTicks": 30_000_000_000,
                        "UserData": {
                            "PlayedPercentage": 42.5,
                            "PlaybackPositionTicks": 12_750_000_000,
                            "PlayCount": 0,
                        },
                    },
                ],
                "TotalRecordCount": 2,
            },
        )

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        records = await JellyfinAdapter(CONFIG, http_client).get_play_history()

    assert seen[0].url.params["Filters"] == "IsPlayed"
    movie_play, episode_play = records
    assert movie_play.media_type == "movie"
    assert movie_play.played_percentage == 100.0
    assert movie_play.reached_completion
    assert movie_play.play_count == 2
    assert movie_play.favorite is True
    assert movie_play.last_played_at == datetime(2024, 2, 10, 21, 0)
    assert episode_play.media_type == "episode"
    assert episode_play.position_seconds == 1_275
    assert episode_play.duration_seconds == 3_000
    assert episode_play.item.payload.series_source_item_id == "s1"
    assert not episode_play.reached_completion


@pytest.mark.anyio("asyncio")
async def test_missing_item_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        assert await JellyfinAdapter(CONFIG, http_client).get_movie_by_id("zzz") is None


@pytest.mark.anyio("asyncio")
async def test_server_errors_are_retried(monkeypatch) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(jellyfin, "asyncio", SimpleNamespace(sleep=fake_sleep))
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"Items": [_movie("a", "Arrival")], "TotalRecordCount": 1})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        movies = await JellyfinAdapter(CONFIG, http_client, max_retries=3).get_movies()

    assert [item.title for item in movies] == ["Arrival"]
    assert delays == [1.1, 2.2]


@pytest.mark.anyio("asyncio")
async def test_retries_are_bounded(monkeypatch) -> None:
    async def fake_sleep(seconds: float) -> None:
        return None

    monkeypatch.setattr(jellyfin, "asyncio", SimpleNamespace(sleep=fake_sleep))

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://jellyfin.local"
    ) as http_client:
        with pytest.raises(SourceRequestError, match="unreachable"):
            await JellyfinAdapter(CONFIG, http_client, max_retries=2).get_movies()


def test_adapter_requires_remote_user() -> None:
    with pytest.raises(ValueError):
        JellyfinAdapter(CONFIG.model_copy(update={"remote_user_id": None}), httpx.AsyncClient())


@pytest.mark.anyio("asyncio")
async def test_factories_only_load_their_source_type(database_url) -> None:
    database = Database(database_url)
    await database.create_all()
    try:
        async with database.session() as session:
            async with session.begin():
                sources = SourceRepository(session)
                await sources.add(CONFIG)
                await sources.add(
                    CONFIG.model_copy(
                        update={"id": 4, "source_type": "emby", "base_url": "http://emby.local"}
                    )
                )
        settings = Settings(_env_file=None, SOURCE_PAGE_SIZE=25)
        jellyfin_factory = JellyfinAdapterFactory(database.session_factory, settings)
        emby_factory = EmbyAdapterFactory(database.session_factory, settings)

        assert (await jellyfin_factory.load_config(3)).name == "Den"
        assert await jellyfin_factory.load_config(4) is None
        emby_config = await emby_factory.load_config(4)
        adapter = emby_factory.create(emby_config)
        try:
            assert isinstance(adapter, EmbyAdapter)
            assert adapter.source_type == "emby"
            assert adapter.source_id == 4
            assert adapter._page_size == 25
        finally:
            await adapter.aclose()
    finally:
        await database.dispose()
