from datetime import date, datetime

import pytest

from mediasync.models import SyncTarget
from mediasync.utils import (
    chunked,
    normalize_sync_target,
    parse_date,
    parse_timestamp,
    ticks_to_seconds,
)


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("movies", SyncTarget.MOVIES),
        ("Movie", SyncTarget.MOVIES),
        (" MOVIES ", SyncTarget.MOVIES),
        ("series", SyncTarget.SERIES),
        ("tv-shows", SyncTarget.SERIES),
        ("Episodes", SyncTarget.EPISODES),
        ("music", SyncTarget.TRACKS),
        ("tracks", SyncTarget.TRACKS),
        ("albums", SyncTarget.ALBUMS),
        ("artist", SyncTarget.ARTISTS),
        ("playlists", SyncTarget.PLAYLISTS),
        ("Playlist", SyncTarget.PLAYLISTS),
        ("history", SyncTarget.HISTORY),
        ("FULL", SyncTarget.FULL),
    ],
)
def test_normalize_sync_target(token, expected):
    assert normalize_sync_target(token) is expected


@pytest.mark.parametrize("token", [None, "", "   ", "podcasts", "moviez"])
def test_normalize_sync_target_rejects_unknown(token):
    assert normalize_sync_target(token) is None


def test_chunked_keeps_order_and_remainder():
    batches = list(chunked(list(range(7)), 3))

    assert batches == [[0, 1, 2], [3, 4, 5], [6]]


def test_chunked_requires_positive_size():
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_parse_timestamp_handles_seven_digit_fractions():
    parsed = parse_timestamp("2024-03-01T20:15:30.1234567Z")

    assert parsed == datetime(2024, 3, 1, 20, 15, 30, 123456)
    assert parsed.tzinfo is None


def test_parse_timestamp_converts_offsets_to_utc():
    assert parse_timestamp("2024-03-01T22:00:00+02:00") == datetime(2024, 3, 1, 20, 0)


def test_parse_timestamp_ignores_garbage():
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_parse_date():
    assert parse_date("2016-11-11T00:00:00.0000000Z") == date(2016, 11, 11)


def test_ticks_to_seconds():
    assert ticks_to_seconds(69_600_000_000) == 6_960
    assert ticks_to_seconds(None) == 0
