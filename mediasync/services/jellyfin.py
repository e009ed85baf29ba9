"""Adapters for Jellyfin and Emby media servers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..exceptions import SourceRequestError
from ..models import (
    AlbumPayload,
    ArtistPayload,
    CanonicalMediaItem,
    EpisodePayload,
    ExternalID,
    MoviePayload,
    PlaybackRecord,
    PlaylistPayload,
    QueryOptions,
    SeasonPayload,
    SeriesPayload,
    SourceConfig,
    SourceMapping,
    TrackPayload,
)
from ..repository import SourceRepository
from ..utils import parse_date, parse_timestamp, ticks_to_seconds

logger = logging.getLogger(__name__)

_ITEM_FIELDS = ",".join(
    [
        "Overview",
        "Genres",
        "ProviderIds",
        "PremiereDate",
        "ProductionYear",
        "OfficialRating",
        "Studios",
        "ChildCount",
        "RecursiveItemCount",
        "UserData",
    ]
)

_KIND_BY_TYPE: dict[str, str] = {
    "Movie": "movie",
    "Series": "series",
    "Season": "season",
    "Episode": "episode",
    "Audio": "track",
    "MusicAlbum": "album",
    "MusicArtist": "artist",
    "Playlist": "playlist",
}

_MUSICBRAINZ_KEYS: dict[str, str] = {
    "track": "musicbrainztrack",
    "album": "musicbrainzalbum",
    "artist": "musicbrainzartist",
}


class JellyfinAdapter:
    """Reads catalogs and play history from a Jellyfin server."""

    source_type = "jellyfin"

    def __init__(
        self,
        config: SourceConfig,
        http_client: httpx.AsyncClient,
        *,
        page_size: int = 200,
        max_retries: int = 3,
        owns_client: bool = False,
    ):
        if not config.remote_user_id:
            raise ValueError(f"{self.source_type} source {config.id} has no remote user id")
        self.source_id = config.id
        self._config = config
        self._client = http_client
        self._page_size = page_size
        self._max_retries = max_retries
        self._owns_client = owns_client

    def supports_movies(self) -> bool:
        return True

    def supports_series(self) -> bool:
        return True

    def supports_music(self) -> bool:
        return True

    def supports_history(self) -> bool:
        return True

    def supports_playlists(self) -> bool:
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _user_path(self) -> str:
        return f"/Users/{self._config.remote_user_id}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.api_key:
            headers["X-Emby-Token"] = self._config.api_key
        return headers

    async def get_movies(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("Movie", options)

    async def get_movie_by_id(self, source_item_id: str) -> CanonicalMediaItem | None:
        return await self._get_item(source_item_id, expected="movie")

    async def get_series(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("Series", options)

    async def get_series_by_id(self, source_item_id: str) -> CanonicalMediaItem | None:
        return await self._get_item(source_item_id, expected="series")

    async def get_series_seasons(self, series_id: str) -> list[CanonicalMediaItem]:
        payload = await self._get_json(
            f"/Shows/{series_id}/Seasons",
            {"userId": self._config.remote_user_id, "Fields": _ITEM_FIELDS},
        )
        return self._convert_all(_items_of(payload))

    async def get_series_episodes(
        self, series_id: str, season_number: int
    ) -> list[CanonicalMediaItem]:
        payload = await self._get_json(
            f"/Shows/{series_id}/Episodes",
            {
                "userId": self._config.remote_user_id,
                "season": season_number,
                "Fields": _ITEM_FIELDS,
            },
        )
        return self._convert_all(_items_of(payload))

    async def get_tracks(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("Audio", options)

    async def get_albums(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("MusicAlbum", options)

    async def get_artists(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("MusicArtist", options)

    async def get_playlists(self, options: QueryOptions | None = None) -> list[CanonicalMediaItem]:
        return await self._list_catalog("Playlist", options)

    async def get_play_history(
        self, options: QueryOptions | None = None
    ) -> list[PlaybackRecord]:
        """Return the user's played items as playback records."""

        raw_items = await self._list_items(
            "Movie,Episode,Audio",
            options,
            extra={"Filters": "IsPlayed", "SortBy": "DatePlayed", "SortOrder": "Descending"},
        )
        records: list[PlaybackRecord] = []
        for raw in raw_items:
            item = self._convert(raw)
            if item is None:
                continue
            user_data = raw.get("UserData") or {}
            played = bool(user_data.get("Played"))
            percentage = user_data.get("PlayedPercentage")
            if percentage is None:
                # Servers drop the percentage once an item is marked played.
                percentage = 100.0 if played else 0.0
            last_played = parse_timestamp(user_data.get("LastPlayedDate"))
            records.append(
                PlaybackRecord(
                    media_type=item.type,
                    item=item,
                    play_count=int(user_data.get("PlayCount") or 0),
                    position_seconds=ticks_to_seconds(user_data.get("PlaybackPositionTicks")),
                    duration_seconds=ticks_to_seconds(raw.get("RunTimeTicks")),
                    played_percentage=float(percentage),
                    completed=played,
                    favorite=bool(user_data.get("IsFavorite")),
                    user_rating=user_data.get("Rating"),
                    played_at=last_played,
                    last_played_at=last_played,
                )
            )
        return records

    async def _list_catalog(
        self, item_type: str, options: QueryOptions | None
    ) -> list[CanonicalMediaItem]:
        return self._convert_all(await self._list_items(item_type, options))

    async def _list_items(
        self,
        item_types: str,
        options: QueryOptions | None,
        *,
        extra: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of ``/Users/{id}/Items`` for the given types."""

        options = options or QueryOptions()
        collected: list[dict[str, Any]] = []
        start_index = options.offset
        while True:
            limit = self._page_size
            if options.limit is not None:
                remaining = options.limit - len(collected)
                if remaining <= 0:
                    break
                limit = min(limit, remaining)
            params: dict[str, Any] = {
                "IncludeItemTypes": item_types,
                "Recursive": "true",
                "Fields": _ITEM_FIELDS,
                "StartIndex": start_index,
                "Limit": limit,
            }
            if options.since is not None:
                params["MinDateLastSaved"] = options.since.strftime("%Y-%m-%dT%H:%M:%SZ")
            if extra:
                params.update(extra)
            payload = await self._get_json(f"{self._user_path}/Items", params)
            page = _items_of(payload)
            collected.extend(page)
            start_index += len(page)
            total = payload.get("TotalRecordCount") if isinstance(payload, dict) else None
            if not page or len(page) < limit:
                break
            if isinstance(total, int) and start_index >= total:
                break
        return collected

    async def _get_item(self, source_item_id: str, *, expected: str) -> CanonicalMediaItem | None:
        payload = await self._get_json(
            f"{self._user_path}/Items/{source_item_id}",
            {"Fields": _ITEM_FIELDS},
            allow_missing=True,
        )
        if not isinstance(payload, dict):
            return None
        item = self._convert(payload)
        if item is None or item.type != expected:
            return None
        return item

    async def _get_json(
        self,
        path: str,
        params: dict[str, Any],
        *,
        allow_missing: bool = False,
    ) -> Any:
        attempt = 0
        while True:
            try:
                response = await self._client.get(path, params=params, headers=self._headers())
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "%s request to %s failed (%s), retrying in %.1fs",
                        self.source_type,
                        path,
                        exc,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceRequestError(
                    f"{self.source_type} source {self.source_id} unreachable: {exc}"
                ) from exc

            if response.status_code >= 500:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "%s returned %s for %s, retrying in %.1fs",
                        self.source_type,
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            if response.status_code == 404 and allow_missing:
                return None
            if response.status_code >= 400:
                raise SourceRequestError(
                    f"{self.source_type} source {self.source_id} returned "
                    f"{response.status_code} for {path}"
                )
            try:
                return response.json()
            except ValueError as exc:
                raise SourceRequestError(
                    f"{self.source_type} source {self.source_id} sent invalid JSON for {path}"
                ) from exc

    def _convert_all(self, raw_items: list[dict[str, Any]]) -> list[CanonicalMediaItem]:
        items: list[CanonicalMediaItem] = []
        for raw in raw_items:
            item = self._convert(raw)
            if item is not None:
                items.append(item)
        return items

    def _convert(self, raw: dict[str, Any]) -> CanonicalMediaItem | None:
        kind = _KIND_BY_TYPE.get(str(raw.get("Type") or ""))
        item_id = raw.get("Id")
        if kind is None or not item_id:
            logger.debug("Ignoring %s item %r", self.source_type, raw.get("Type"))
            return None
        try:
            payload = _build_payload(kind, raw)
            return CanonicalMediaItem(
                type=kind,
                title=payload.title,
                release_date=payload.release_date,
                release_year=payload.release_year,
                payload=payload,
                source_mappings=[
                    SourceMapping(
                        source_id=self.source_id,
                        source_type=self.source_type,
                        source_item_id=str(item_id),
                    )
                ],
                external_ids=_external_ids(kind, raw.get("ProviderIds")),
            )
        except ValueError as exc:
            logger.warning(
                "Skipping malformed %s item %s: %s", self.source_type, item_id, exc
            )
            return None


class EmbyAdapter(JellyfinAdapter):
    """Emby speaks the same REST dialect as Jellyfin."""

    source_type = "emby"


def _items_of(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        items = payload.get("Items")
    else:
        items = payload
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _external_ids(kind: str, provider_ids: Any) -> list[ExternalID]:
    if not isinstance(provider_ids, dict):
        return []
    externals: list[ExternalID] = []
    musicbrainz_key = _MUSICBRAINZ_KEYS.get(kind)
    for key, value in provider_ids.items():
        if not value:
            continue
        name = str(key).lower()
        if name.startswith("musicbrainz"):
            if name != musicbrainz_key:
                continue
            name = "musicbrainz"
        externals.append(ExternalID(catalog_name=name, catalog_id=str(value)))
    return externals


def _first_name(entries: Any) -> str | None:
    if isinstance(entries, list) and entries:
        first = entries[0]
        if isinstance(first, dict):
            return first.get("Name")
        return str(first)
    return None


def _build_payload(kind: str, raw: dict[str, Any]):
    common: dict[str, Any] = {
        "title": raw.get("Name") or "",
        "overview": raw.get("Overview"),
        "release_date": parse_date(raw.get("PremiereDate")),
        "release_year": raw.get("ProductionYear"),
        "genres": [genre for genre in raw.get("Genres") or [] if genre],
        "duration_seconds": ticks_to_seconds(raw.get("RunTimeTicks")) or None,
        "content_rating": raw.get("OfficialRating"),
    }
    if kind == "movie":
        return MoviePayload(studio=_first_name(raw.get("Studios")), **common)
    if kind == "series":
        return SeriesPayload(
            season_count=raw.get("ChildCount"),
            episode_count=raw.get("RecursiveItemCount"),
            network=_first_name(raw.get("Studios")),
            status=raw.get("Status"),
            **common,
        )
    if kind == "season":
        return SeasonPayload(
            number=raw.get("IndexNumber") or 0,
            episode_count=raw.get("ChildCount"),
            series_title=raw.get("SeriesName"),
            **common,
        )
    if kind == "episode":
        return EpisodePayload(
            number=raw.get("IndexNumber") or 0,
            season_number=raw.get("ParentIndexNumber") or 0,
            series_title=raw.get("SeriesName"),
            series_source_item_id=raw.get("SeriesId"),
            **common,
        )
    if kind == "track":
        return TrackPayload(
            number=raw.get("IndexNumber"),
            disc_number=raw.get("ParentIndexNumber"),
            album_name=raw.get("Album"),
            artist_name=raw.get("AlbumArtist") or _first_name(raw.get("Artists")),
            **common,
        )
    if kind == "album":
        return AlbumPayload(
            artist_name=raw.get("AlbumArtist") or _first_name(raw.get("AlbumArtists")),
            track_count=raw.get("ChildCount"),
            **common,
        )
    if kind == "artist":
        return ArtistPayload(album_count=raw.get("ChildCount"), **common)
    return PlaylistPayload(item_count=raw.get("ChildCount") or 0, **common)


class JellyfinAdapterFactory:
    """Builds Jellyfin adapters from ``media_sources`` rows."""

    source_type = "jellyfin"
    adapter_class: type[JellyfinAdapter] = JellyfinAdapter

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._transport = transport

    async def load_config(self, source_id: int) -> SourceConfig | None:
        async with self._session_factory() as session:
            return await SourceRepository(session).get(
                source_id, source_type=self.source_type
            )

    def create(self, config: SourceConfig) -> JellyfinAdapter:
        if not config.remote_user_id:
            raise ValueError(f"{self.source_type} source {config.id} has no remote user id")
        client_kwargs: dict[str, Any] = {
            "base_url": config.base_url,
            "timeout": httpx.Timeout(self._settings.source_request_timeout, connect=10.0),
            "headers": {"User-Agent": f"{self._settings.app_name} (mediasync)"},
        }
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        return self.adapter_class(
            config,
            httpx.AsyncClient(**client_kwargs),
            page_size=self._settings.source_page_size,
            max_retries=self._settings.source_max_retries,
            owns_client=True,
        )


class EmbyAdapterFactory(JellyfinAdapterFactory):
    source_type = "emby"
    adapter_class = EmbyAdapter
