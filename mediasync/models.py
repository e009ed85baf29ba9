"""Pydantic models describing canonical media, playback and job state."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

MediaType = Literal[
    "movie",
    "series",
    "season",
    "episode",
    "track",
    "album",
    "artist",
    "playlist",
    "collection",
]

COMPLETION_THRESHOLD = 90.0


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str | None) -> "Frequency":
        """Return the frequency for ``value``; unknown strings map to daily."""

        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.DAILY

    @property
    def interval(self) -> timedelta | None:
        if self is Frequency.MANUAL:
            return None
        if self is Frequency.WEEKLY:
            return timedelta(days=7)
        if self is Frequency.MONTHLY:
            # Months are approximated as 30 days.
            return timedelta(days=30)
        return timedelta(days=1)


class SyncTarget(str, Enum):
    """Normalised media-type token accepted by the sync orchestrator."""

    MOVIES = "movies"
    SERIES = "series"
    EPISODES = "episodes"
    TRACKS = "tracks"
    ALBUMS = "albums"
    ARTISTS = "artists"
    PLAYLISTS = "playlists"
    HISTORY = "history"
    FULL = "full"


class SourceMapping(BaseModel):
    """Binds a canonical item to its identity inside one external source."""

    source_id: int
    source_type: str
    source_item_id: str


class ExternalID(BaseModel):
    """Identifier in a third-party metadata catalog (imdb, tmdb, ...)."""

    catalog_name: str
    catalog_id: str


class _Payload(BaseModel):
    title: str = ""
    overview: str | None = None
    release_date: date | None = None
    release_year: int | None = None
    genres: list[str] = Field(default_factory=list)
    duration_seconds: int | None = None
    content_rating: str | None = None


class MoviePayload(_Payload):
    kind: Literal["movie"] = "movie"
    studio: str | None = None


class SeriesPayload(_Payload):
    kind: Literal["series"] = "series"
    season_count: int | None = None
    episode_count: int | None = None
    network: str | None = None
    status: str | None = None


class SeasonPayload(_Payload):
    kind: Literal["season"] = "season"
    number: int = 0
    episode_count: int | None = None
    series_title: str | None = None


class EpisodePayload(_Payload):
    kind: Literal["episode"] = "episode"
    number: int = 0
    season_number: int = 0
    series_title: str | None = None
    series_source_item_id: str | None = None


class TrackPayload(_Payload):
    kind: Literal["track"] = "track"
    number: int | None = None
    disc_number: int | None = None
    album_name: str | None = None
    artist_name: str | None = None


class AlbumPayload(_Payload):
    kind: Literal["album"] = "album"
    artist_name: str | None = None
    track_count: int | None = None


class ArtistPayload(_Payload):
    kind: Literal["artist"] = "artist"
    album_count: int | None = None


class PlaylistPayload(_Payload):
    kind: Literal["playlist"] = "playlist"
    item_count: int = 0
    owner_user_id: int | None = None


class CollectionPayload(_Payload):
    kind: Literal["collection"] = "collection"
    item_count: int = 0


MediaPayload = Annotated[
    Union[
        MoviePayload,
        SeriesPayload,
        SeasonPayload,
        EpisodePayload,
        TrackPayload,
        AlbumPayload,
        ArtistPayload,
        PlaylistPayload,
        CollectionPayload,
    ],
    Field(discriminator="kind"),
]


class CanonicalMediaItem(BaseModel):
    """The single internal record for one piece of media."""

    model_config = ConfigDict(validate_assignment=True)

    id: int | None = None
    type: MediaType
    title: str = ""
    release_date: date | None = None
    release_year: int | None = None
    payload: MediaPayload
    source_mappings: list[SourceMapping] = Field(default_factory=list)
    external_ids: list[ExternalID] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_payload_kind(self) -> "CanonicalMediaItem":
        if self.payload.kind != self.type:
            raise ValueError(
                f"Payload kind {self.payload.kind!r} does not match item type {self.type!r}"
            )
        return self

    def mapping_for(self, source_id: int) -> SourceMapping | None:
        for mapping in self.source_mappings:
            if mapping.source_id == source_id:
                return mapping
        return None

    def source_item_id(self, source_id: int) -> str | None:
        mapping = self.mapping_for(source_id)
        if mapping is None or not mapping.source_item_id:
            return None
        return mapping.source_item_id

    def external_id(self, catalog_name: str) -> str | None:
        for external in self.external_ids:
            if external.catalog_name == catalog_name:
                return external.catalog_id
        return None

    def apply_payload_fields(self) -> None:
        """Copy the denormalized title and release fields from the payload."""

        self.title = self.payload.title
        self.release_date = self.payload.release_date
        self.release_year = self.payload.release_year
        if self.release_year is None and self.release_date is not None:
            self.release_year = self.release_date.year


class PlaybackRecord(BaseModel):
    """One user's engagement state with one canonical item.

    Adapters return records with ``item`` set to the observed media item and
    ``media_item_id`` unset; persisted records carry ``media_item_id``.
    """

    id: int | None = None
    user_id: int = 0
    media_item_id: int | None = None
    media_type: MediaType
    item: CanonicalMediaItem | None = None
    play_count: int = 0
    position_seconds: int = 0
    duration_seconds: int = 0
    played_percentage: float = 0.0
    completed: bool = False
    favorite: bool = False
    user_rating: float | None = None
    played_at: datetime | None = None
    last_played_at: datetime | None = None

    @property
    def reached_completion(self) -> bool:
        return self.played_percentage >= COMPLETION_THRESHOLD


class SyncScheduleEntry(BaseModel):
    id: int | None = None
    user_id: int
    source_id: int
    source_type: str
    media_type: str
    frequency: Frequency = Frequency.DAILY
    last_run_time: datetime | None = None
    enabled: bool = True

    def is_due(self, now: datetime) -> bool:
        """Return whether enough time passed since the last run."""

        interval = self.frequency.interval
        if interval is None:
            return False
        if self.last_run_time is None:
            return True
        return now - self.last_run_time >= interval


class JobRun(BaseModel):
    id: int | None = None
    job_name: str
    job_type: str = "sync"
    status: JobStatus = JobStatus.RUNNING
    start_time: datetime | None = None
    end_time: datetime | None = None
    progress: int = 0
    progress_message: str | None = None
    error_message: str | None = None
    total_items: int = 0
    processed_items: int = 0
    user_id: int | None = None
    metadata: dict[str, object] = Field(default_factory=dict)


class SourceConfig(BaseModel):
    """Connection details for one configured external source."""

    id: int
    user_id: int
    source_type: str
    name: str = ""
    base_url: str
    api_key: str | None = None
    remote_user_id: str | None = None
    enabled: bool = True


class QueryOptions(BaseModel):
    """Filters passed to adapter listing calls."""

    limit: int | None = None
    offset: int = 0
    since: datetime | None = None
