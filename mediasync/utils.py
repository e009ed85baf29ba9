"""Utility helpers for the mediasync service."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterator, Sequence, TypeVar

from .models import SyncTarget

T = TypeVar("T")

TICKS_PER_SECOND = 10_000_000

_TARGET_ALIASES: dict[str, SyncTarget] = {
    "movie": SyncTarget.MOVIES,
    "series": SyncTarget.SERIES,
    "show": SyncTarget.SERIES,
    "tvshow": SyncTarget.SERIES,
    "episode": SyncTarget.EPISODES,
    "track": SyncTarget.TRACKS,
    "music": SyncTarget.TRACKS,
    "song": SyncTarget.TRACKS,
    "album": SyncTarget.ALBUMS,
    "artist": SyncTarget.ARTISTS,
    "playlist": SyncTarget.PLAYLISTS,
    "history": SyncTarget.HISTORY,
    "full": SyncTarget.FULL,
}


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_sync_target(token: str | None) -> SyncTarget | None:
    """Map a free-form media type token onto a sync target.

    Matching is case-insensitive and accepts singular or plural spellings,
    so ``"Movie"``, ``"movies"`` and ``" MOVIES "`` all resolve to
    :attr:`SyncTarget.MOVIES`. Unknown tokens return ``None``.
    """

    if token is None:
        return None
    cleaned = token.strip().lower().replace("_", "").replace("-", "").replace(" ", "")
    if not cleaned:
        return None
    if cleaned in _TARGET_ALIASES:
        return _TARGET_ALIASES[cleaned]
    if cleaned.endswith("s") and cleaned[:-1] in _TARGET_ALIASES:
        return _TARGET_ALIASES[cleaned[:-1]]
    if cleaned.endswith("ies") and f"{cleaned[:-3]}y" in _TARGET_ALIASES:
        return _TARGET_ALIASES[f"{cleaned[:-3]}y"]
    return None


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` entries."""

    if size <= 0:
        raise ValueError("Batch size must be positive")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def ticks_to_seconds(ticks: object) -> int:
    try:
        return int(int(ticks) // TICKS_PER_SECOND)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Some servers emit seven fractional digits; datetime accepts at most six.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if char.isdigit():
                digits += char
            else:
                rest = tail[index:]
                break
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: object) -> date | None:
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None
