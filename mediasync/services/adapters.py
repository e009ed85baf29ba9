"""Capability-typed interfaces implemented by external source adapters."""

from __future__ import annotations

import inspect
import logging
from typing import Protocol, runtime_checkable

from ..models import CanonicalMediaItem, PlaybackRecord, QueryOptions, SourceConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class MediaSourceAdapter(Protocol):
    """Base adapter: identity plus capability checks per media family."""

    source_id: int
    source_type: str

    def supports_movies(self) -> bool: ...

    def supports_series(self) -> bool: ...

    def supports_music(self) -> bool: ...

    def supports_history(self) -> bool: ...


@runtime_checkable
class MovieProvider(Protocol):
    async def get_movies(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...

    async def get_movie_by_id(self, source_item_id: str) -> CanonicalMediaItem | None: ...


@runtime_checkable
class SeriesProvider(Protocol):
    async def get_series(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...

    async def get_series_by_id(self, source_item_id: str) -> CanonicalMediaItem | None: ...

    async def get_series_seasons(self, series_id: str) -> list[CanonicalMediaItem]: ...

    async def get_series_episodes(
        self, series_id: str, season_number: int
    ) -> list[CanonicalMediaItem]: ...


@runtime_checkable
class MusicProvider(Protocol):
    async def get_tracks(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...

    async def get_albums(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...

    async def get_artists(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...


@runtime_checkable
class PlaylistProvider(Protocol):
    def supports_playlists(self) -> bool: ...

    async def get_playlists(
        self, options: QueryOptions | None = None
    ) -> list[CanonicalMediaItem]: ...


@runtime_checkable
class HistoryProvider(Protocol):
    async def get_play_history(
        self, options: QueryOptions | None = None
    ) -> list[PlaybackRecord]: ...


class AdapterFactory(Protocol):
    """Builds adapters of one source type from stored configuration."""

    source_type: str

    async def load_config(self, source_id: int) -> SourceConfig | None: ...

    def create(self, config: SourceConfig) -> MediaSourceAdapter: ...


async def close_adapter(adapter: object) -> None:
    """Release adapter resources when it exposes ``aclose``."""

    closer = getattr(adapter, "aclose", None)
    if closer is None:
        return
    try:
        result = closer()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:  # pragma: no cover - cleanup best effort
        logger.warning("Failed to close adapter %r: %s", adapter, exc)
