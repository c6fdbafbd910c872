"""Unit tests for data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from anitrack_sync.exceptions import ValidationError
from anitrack_sync.models import SyncStats, UserAnimeEntry, WatchStatus, validate_external_id


def test_user_anime_entry_creation():
    """Test creating a list entry."""
    entry = UserAnimeEntry(
        id="42",
        title="Test Anime",
        status=WatchStatus.WATCHING,
        progress=12.5,
        episodes=24,
    )

    assert entry.id == "42"
    assert entry.title == "Test Anime"
    assert entry.status == WatchStatus.WATCHING
    assert entry.progress == 12.5
    assert entry.score == 0
    assert entry.alternative_titles == []


def test_score_validation():
    """Scores live on a 0-10 scale."""
    entry = UserAnimeEntry(id="1", title="Test", status=WatchStatus.WATCHING, score=8.5)
    assert entry.score == 8.5

    with pytest.raises(PydanticValidationError):
        UserAnimeEntry(id="1", title="Test", status=WatchStatus.WATCHING, score=85)

    with pytest.raises(PydanticValidationError):
        UserAnimeEntry(id="1", title="Test", status=WatchStatus.WATCHING, score=-1)


def test_last_updated_is_normalized_to_utc():
    """Naive timestamps are taken as UTC and aware ones converted."""
    naive = UserAnimeEntry(
        id="1", title="Test", status=WatchStatus.WATCHING, last_updated=datetime(2024, 1, 1, 12, 0)
    )
    assert naive.last_updated == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    plus_two = timezone(timedelta(hours=2))
    aware = UserAnimeEntry(
        id="1",
        title="Test",
        status=WatchStatus.WATCHING,
        last_updated=datetime(2024, 1, 1, 14, 0, tzinfo=plus_two),
    )
    assert aware.last_updated.tzinfo == timezone.utc
    assert aware.last_updated.hour == 12


def test_watch_status_parse():
    """Stored status strings map back to the enum."""
    assert WatchStatus.parse("on_hold") == WatchStatus.ON_HOLD
    with pytest.raises(ValidationError):
        WatchStatus.parse("rewatching")


@pytest.mark.parametrize("value", ["", "   ", None, "12 34", "../1", "-5"])
def test_validate_external_id_rejects_malformed(value):
    """Empty or malformed IDs never reach a tracker."""
    with pytest.raises(ValidationError):
        validate_external_id(value)


def test_validate_external_id_strips_whitespace():
    assert validate_external_id(" 42 ") == "42"
    assert validate_external_id(21) == "21"


def test_sync_stats_counters_and_merge():
    """Every record_* call bumps one counter and keeps a detail line."""
    first = SyncStats()
    first.record_added("added A")
    first.record_skipped()
    second = SyncStats()
    second.record_updated("updated B")
    second.record_error("failed C")
    second.record_deleted("deleted D")

    merged = first.merge(second)

    assert (merged.added, merged.updated, merged.deleted, merged.skipped, merged.errors) == (1, 1, 1, 1, 1)
    assert merged.details == ["added A", "updated B", "failed C", "deleted D"]
    assert merged.changed == 3
    assert first.updated == 0
    assert "errors=1" in merged.summary()
