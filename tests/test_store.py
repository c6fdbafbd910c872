"""Tests for the SQLite tracking store."""

from datetime import datetime, timedelta, timezone

import pytest

from anitrack_sync.database import AnimeRecord, EpisodeProgress, TrackingRecord
from anitrack_sync.exceptions import LocalStoreError, StoreUnavailableError, ValidationError
from anitrack_sync.store import TrackingStore


def _anime(store, title="Frieren", **fields):
    return store.add_anime(AnimeRecord(title=title, **fields))


def test_config_roundtrip(store):
    """Config values can be set, overwritten and deleted."""
    assert store.get_config("active_tracker") is None

    store.set_config("active_tracker", "local")
    store.set_config("active_tracker", "mal")
    assert store.get_config("active_tracker") == "mal"
    assert store.get_all_config() == {"active_tracker": "mal"}

    store.delete_config("active_tracker")
    assert store.get_config("active_tracker") is None


def test_tracking_is_unique_per_anime_and_tracker(store):
    """A second row for the same (anime, tracker) pair is rejected."""
    anime = _anime(store)
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching"))

    with pytest.raises(LocalStoreError):
        store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="2", status="completed"))

    assert len(store.list_trackings_for_anime(anime.id)) == 1


def test_timestamps_come_back_as_aware_utc(store):
    """SQLite drops tzinfo; the store restores UTC."""
    anime = _anime(store)
    when = datetime(2024, 3, 1, 10, 30, tzinfo=timezone(timedelta(hours=9)))
    store.add_tracking(
        TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching", last_updated=when)
    )

    loaded = store.get_tracking(anime.id, "mal")
    assert loaded.last_updated == when
    assert loaded.last_updated.tzinfo == timezone.utc


def test_upsert_tracking_creates_then_updates(store):
    anime = _anime(store)

    created = store.upsert_tracking(anime.id, "local", status="watching", current_episode=3)
    updated = store.upsert_tracking(anime.id, "local", status="completed")

    assert created.id == updated.id
    row = store.get_tracking(anime.id, "local")
    assert row.status == "completed"
    assert row.current_episode == 3


def test_delete_tracking_removes_orphaned_anime(store):
    """The anime goes away with its last tracking row, not before."""
    anime = _anime(store)
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching"))
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="anilist", tracker_id="9", status="watching"))

    assert store.delete_tracking(anime.id, "mal") is False
    assert store.get_anime(anime.id) is not None

    assert store.delete_tracking(anime.id, "anilist") is True
    assert store.get_anime(anime.id) is None


def test_delete_anime_cascades(store):
    """Deleting an anime drops its tracking and progress rows."""
    anime = _anime(store)
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching"))
    store.save_episode_progress(EpisodeProgress(anime_id=anime.id, episode_number=1, position=120))

    store.delete_anime(anime.id)

    assert store.list_trackings_for_tracker("mal") == []
    assert store.list_episode_progress(anime.id) == []


def test_lookup_by_external_id(store):
    anime = _anime(store)
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="52991", status="watching"))

    assert store.get_tracking_by_external_id("52991", "mal").anime_id == anime.id
    assert store.get_anime_by_external_id("52991", "mal").title == "Frieren"
    assert store.get_anime_by_external_id("52991", "anilist") is None


def test_apply_tracking_update_only_sets_known_metadata(store):
    """None metadata values leave the stored anime fields alone."""
    anime = _anime(store, total_episodes=28, description="An elf mage")
    tracking = store.add_tracking(
        TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching", current_episode=2)
    )

    store.apply_tracking_update(
        tracking.id,
        {"current_episode": 5.0},
        {"title": "Sousou no Frieren", "description": None},
    )

    assert store.get_tracking(anime.id, "mal").current_episode == 5.0
    stored = store.get_anime(anime.id)
    assert stored.title == "Sousou no Frieren"
    assert stored.description == "An elf mage"


def test_apply_tracking_update_missing_row(store):
    with pytest.raises(LocalStoreError):
        store.apply_tracking_update(12345, {"status": "completed"})


def test_search_matches_alternative_titles(store):
    _anime(store, title="Sousou no Frieren", alternative_titles=["Frieren: Beyond Journey's End"])
    _anime(store, title="Kusuriya no Hitorigoto")

    assert [a.title for a in store.search_anime("beyond journey")] == ["Sousou no Frieren"]
    assert [a.title for a in store.search_anime("no", limit=1)] == ["Kusuriya no Hitorigoto"]


def test_episode_progress_upsert(store):
    anime = _anime(store)
    store.save_episode_progress(EpisodeProgress(anime_id=anime.id, episode_number=3, position=60, duration=1440))
    store.save_episode_progress(
        EpisodeProgress(anime_id=anime.id, episode_number=3, position=1400, duration=1440, watched=True)
    )

    rows = store.list_episode_progress(anime.id)
    assert len(rows) == 1
    assert rows[0].position == 1400
    assert rows[0].watched is True

    store.delete_episode_progress(anime.id, 3)
    assert store.get_episode_progress(anime.id, 3) is None


def test_recently_and_currently_watching(store):
    now = datetime.now(timezone.utc)
    older = _anime(store, title="Older")
    newer = _anime(store, title="Newer")
    store.save_episode_progress(
        EpisodeProgress(anime_id=older.id, episode_number=1, last_watched=now - timedelta(days=2))
    )
    store.save_episode_progress(
        EpisodeProgress(anime_id=newer.id, episode_number=1, last_watched=now - timedelta(hours=1))
    )
    store.add_tracking(TrackingRecord(anime_id=older.id, tracker="local", status="watching"))
    store.add_tracking(TrackingRecord(anime_id=newer.id, tracker="local", status="completed"))

    assert [a.title for a in store.get_recently_watched()] == ["Newer", "Older"]
    assert [a.title for a in store.get_currently_watching()] == ["Older"]
    assert store.get_currently_watching(tracker="mal") == []


def test_directory_path_is_unavailable(tmp_path):
    with pytest.raises(StoreUnavailableError):
        TrackingStore(tmp_path)


def test_update_records(store):
    anime = _anime(store)
    tracking = store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="mal", tracker_id="1", status="watching"))

    anime.total_episodes = 28
    store.update_anime(anime)
    tracking.status = "completed"
    store.update_tracking(tracking)

    assert store.get_anime(anime.id).total_episodes == 28
    assert store.get_tracking(anime.id, "mal").status == "completed"
    assert store.count_trackings(anime.id) == 1


def test_update_requires_persisted_rows(store):
    with pytest.raises(ValidationError):
        store.update_anime(AnimeRecord(title="Never added"))


def test_export_and_import_json(store, tmp_path):
    """A backup restores every row into an empty store, keeping IDs."""
    anime = _anime(store, alternative_titles=["Sousou no Frieren"], genres=["Fantasy"], total_episodes=28)
    when = datetime(2024, 3, 1, 10, 30, tzinfo=timezone.utc)
    store.add_tracking(
        TrackingRecord(
            anime_id=anime.id, tracker="mal", tracker_id="52991", status="watching", score=9, current_episode=5,
            last_updated=when,
        )
    )
    store.save_episode_progress(EpisodeProgress(anime_id=anime.id, episode_number=5, position=300, watched=True))
    store.set_config("active_tracker", "mal")

    path = tmp_path / "backups" / "ledger.json"
    exported = store.export_json(path)
    assert path.exists()
    assert exported.counts() == {"config": 1, "anime": 1, "anime_tracking": 1, "episode_progress": 1}

    restored = TrackingStore(tmp_path / "restored.db")
    try:
        restored.import_json(path)

        copy = restored.get_anime(anime.id)
        assert copy.title == "Frieren"
        assert copy.alternative_titles == ["Sousou no Frieren"]
        assert copy.genres == ["Fantasy"]

        tracking = restored.get_tracking_by_external_id("52991", "mal")
        assert tracking.anime_id == anime.id
        assert tracking.score == 9
        assert tracking.current_episode == 5
        assert tracking.last_updated == when

        progress = restored.get_episode_progress(anime.id, 5)
        assert progress.position == 300
        assert progress.watched is True
        assert restored.get_config("active_tracker") == "mal"
    finally:
        restored.close()


def test_import_replaces_rows_with_the_same_id(store, tmp_path):
    anime = _anime(store)
    store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="local", status="watching", current_episode=2))
    path = tmp_path / "ledger.json"
    store.export_json(path)

    store.upsert_tracking(anime.id, "local", current_episode=7)
    store.import_json(path)

    assert store.get_tracking(anime.id, "local").current_episode == 2
    assert len(store.list_trackings_for_anime(anime.id)) == 1


def test_import_rejects_malformed_backup(store, tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text('{"anime": [{"title": "no id"}]}', encoding="utf-8")

    with pytest.raises(ValidationError):
        store.import_json(path)

    with pytest.raises(LocalStoreError):
        store.import_json(tmp_path / "missing.json")
