"""Tests for the canonical data models."""

from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from mediasync.models import (
    CanonicalMediaItem,
    Frequency,
    MoviePayload,
    PlaybackRecord,
    SyncScheduleEntry,
    TrackPayload,
)

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _entry(frequency: Frequency, last_run: datetime | None) -> SyncScheduleEntry:
    return SyncScheduleEntry(
        user_id=1,
        source_id=1,
        source_type="jellyfin",
        media_type="movies",
        frequency=frequency,
        last_run_time=last_run,
    )


def test_daily_schedule_due_after_a_day() -> None:
    assert not _entry(Frequency.DAILY, NOW - timedelta(hours=23)).is_due(NOW)
    assert _entry(Frequency.DAILY, NOW - timedelta(hours=25)).is_due(NOW)


def test_weekly_and_monthly_intervals() -> None:
    assert not _entry(Frequency.WEEKLY, NOW - timedelta(days=6)).is_due(NOW)
    assert _entry(Frequency.WEEKLY, NOW - timedelta(days=7)).is_due(NOW)
    assert not _entry(Frequency.MONTHLY, NOW - timedelta(days=29)).is_due(NOW)
    assert _entry(Frequency.MONTHLY, NOW - timedelta(days=30)).is_due(NOW)


def test_manual_schedule_is_never_due() -> None:
    assert not _entry(Frequency.MANUAL, None).is_due(NOW)
    assert not _entry(Frequency.MANUAL, NOW - timedelta(days=365)).is_due(NOW)


def test_schedule_without_prior_run_is_due() -> None:
    assert _entry(Frequency.WEEKLY, None).is_due(NOW)


def test_unknown_frequency_falls_back_to_daily() -> None:
    assert Frequency.parse("hourly") is Frequency.DAILY
    assert Frequency.parse(" Weekly ") is Frequency.WEEKLY
    assert Frequency.parse(None) is Frequency.DAILY


def test_payload_kind_must_match_item_type() -> None:
    with pytest.raises(ValueError):
        CanonicalMediaItem(type="movie", payload=TrackPayload(title="Song"))


def test_payload_is_decoded_from_its_tag() -> None:
    item = CanonicalMediaItem.model_validate(
        {"type": "track", "payload": {"kind": "track", "title": "Song", "number": 3}}
    )

    assert isinstance(item.payload, TrackPayload)
    assert item.payload.number == 3


def test_apply_payload_fields_derives_year_from_date() -> None:
    item = CanonicalMediaItem(
        type="movie",
        title="stale",
        payload=MoviePayload(title="Arrival", release_date=date(2016, 11, 11)),
    )

    item.apply_payload_fields()

    assert item.title == "Arrival"
    assert item.release_year == 2016


def test_playback_completion_threshold() -> None:
    assert PlaybackRecord(media_type="movie", played_percentage=90).reached_completion
    assert not PlaybackRecord(media_type="movie", played_percentage=89.9).reached_completion
