"""Tests for the AniList GraphQL tracker."""

from datetime import date, datetime, timezone

import pytest

from anitrack_sync.anilist_client import AniListTracker
from anitrack_sync.exceptions import AuthenticationError, RemoteAPIError, ValidationError
from anitrack_sync.models import WatchStatus
from anitrack_sync.oauth import OAuthSession

from fakes import FakeProvider, FakeResponse

MEDIA = {
    "id": 154587,
    "title": {"userPreferred": "Sousou no Frieren", "romaji": "Sousou no Frieren", "english": "Frieren", "native": "葬送のフリーレン"},
    "synonyms": ["Frieren at the Funeral"],
    "format": "TV",
    "episodes": 28,
    "status": "FINISHED",
    "season": "FALL",
    "seasonYear": 2023,
    "genres": ["Adventure", "Drama"],
    "averageScore": 91,
    "coverImage": {"large": "cover.jpg"},
    "startDate": {"year": 2023, "month": 9, "day": 29},
    "endDate": {"year": 2024, "month": None, "day": None},
    "studios": {"nodes": [{"name": "Madhouse"}]},
}


@pytest.fixture
def tracker(token_manager):
    # AniList tokens are long-lived and have no refresh token
    token_manager.set_tokens("anilist", "tok")
    return AniListTracker(OAuthSession(FakeProvider(service="anilist"), token_manager, open_browser=False))


def _viewer():
    return FakeResponse(200, {"data": {"Viewer": {"id": 42, "name": "frieren_fan"}}})


def test_user_list_looks_up_viewer_once(tracker, http):
    entry = {
        "status": "REPEATING",
        "score": 9.5,
        "progress": 4,
        "notes": None,
        "updatedAt": 1704110400,
        "startedAt": {"year": 2023, "month": 10, "day": 1},
        "completedAt": {},
        "media": MEDIA,
    }
    collection = {"data": {"MediaListCollection": {"lists": [{"entries": [entry]}, {"entries": []}]}}}
    http.queue(_viewer(), FakeResponse(200, collection), FakeResponse(200, collection))

    entries = tracker.get_user_anime_list()
    tracker.get_user_anime_list()

    assert len(http.calls) == 3
    assert http.calls[1]["json"]["variables"] == {"userId": 42}
    assert http.calls[1]["method"] == "POST"

    parsed = entries[0]
    assert parsed.id == "154587"
    assert parsed.status == WatchStatus.WATCHING
    assert parsed.score == 9.5
    assert parsed.progress == 4
    assert parsed.last_updated == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert parsed.started_at == date(2023, 10, 1)
    assert parsed.finished_at is None


def test_media_metadata_mapping(tracker, http):
    http.queue(FakeResponse(200, {"data": {"Media": MEDIA}}))

    info = tracker.get_anime_details("154587")

    assert info.title == "Sousou no Frieren"
    assert info.english_title == "Frieren"
    assert info.alternative_titles == ["Frieren", "葬送のフリーレン", "Frieren at the Funeral"]
    assert info.rating == 9.1
    assert info.season == "fall"
    assert info.start_date == date(2023, 9, 29)
    assert info.end_date is None
    assert info.studios == ["Madhouse"]


def test_search_passes_limit(tracker, http):
    http.queue(FakeResponse(200, {"data": {"Page": {"media": [MEDIA]}}}))

    results = tracker.search_anime("frieren", limit=3)

    assert [r.id for r in results] == ["154587"]
    assert http.calls[0]["json"]["variables"] == {"search": "frieren", "perPage": 3}


def test_update_maps_status_and_omits_zero_fields(tracker, http):
    http.queue(
        FakeResponse(200, {"data": {"SaveMediaListEntry": {"id": 1}}}),
        FakeResponse(200, {"data": {"SaveMediaListEntry": {"id": 1}}}),
    )

    tracker.update_anime_status("154587", WatchStatus.ON_HOLD, episode=7, score=8.5)
    tracker.update_anime_status("154587", WatchStatus.PLAN_TO_WATCH)

    assert http.calls[0]["json"]["variables"] == {
        "mediaId": 154587,
        "status": "PAUSED",
        "progress": 7,
        "scoreRaw": 85,
    }
    assert http.calls[1]["json"]["variables"] == {"mediaId": 154587, "status": "PLANNING"}


def test_graphql_errors_raise(tracker, http):
    http.queue(FakeResponse(200, {"errors": [{"message": "Invalid media ID"}], "data": None}))

    with pytest.raises(RemoteAPIError, match="Invalid media ID"):
        tracker.get_anime_details("1")


def test_invalid_id_is_rejected_locally(tracker, http):
    with pytest.raises(ValidationError):
        tracker.update_anime_status("frieren", WatchStatus.WATCHING)

    assert http.calls == []


def test_revoked_token_cannot_be_refreshed(token_manager, http):
    """AniList has no refresh grant, so a 401 is final."""
    token_manager.set_tokens("anilist", "tok", "refresh")
    tracker = AniListTracker(OAuthSession(FakeProvider(service="anilist", fail_refresh=True), token_manager))
    http.queue(FakeResponse(401))

    with pytest.raises(AuthenticationError):
        tracker.search_anime("frieren")

    assert not tracker.is_authenticated()
    assert len(http.calls) == 1


def test_malformed_list_entry_is_set_aside(tracker, http):
    good = {"status": "CURRENT", "score": 7, "progress": 3, "updatedAt": 1704110400, "media": MEDIA}
    bad = {"status": "CURRENT", "score": 7, "progress": -2, "updatedAt": 1704110400, "media": dict(MEDIA, id=1)}
    collection = {"data": {"MediaListCollection": {"lists": [{"entries": [bad, good]}]}}}
    http.queue(_viewer(), FakeResponse(200, collection))

    entries = tracker.get_user_anime_list()

    assert [e.id for e in entries] == ["154587"]
    assert len(tracker.rejected_entries) == 1
    assert "AniList list entry 1" in tracker.rejected_entries[0]


def test_media_without_id_keeps_empty_id(tracker, http):
    media = {k: v for k, v in MEDIA.items() if k != "id"}
    http.queue(FakeResponse(200, {"data": {"Media": media}}))

    details = tracker.get_anime_details("154587")

    assert details.id == ""
