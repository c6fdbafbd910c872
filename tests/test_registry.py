"""Tests for the tracker registry."""

import pytest

from anitrack_sync.cancellation import CancelToken
from anitrack_sync.exceptions import AuthenticationError, RegistrySyncError, RemoteAPIError, TrackerNotFoundError
from anitrack_sync.local_tracker import LocalTracker
from anitrack_sync.registry import TrackerRegistry

from fakes import T0, FakeTracker, make_entry


def test_active_tracker_defaults_to_local_and_persists(store):
    registry = TrackerRegistry(store, [LocalTracker(store)])

    assert registry.get_active().name == "local"
    assert store.get_config("active_tracker") == "local"


def test_set_active_validates_name(store):
    registry = TrackerRegistry(store, [LocalTracker(store), FakeTracker(name="mal")])

    registry.set_active("mal")
    assert registry.get_active().name == "mal"

    with pytest.raises(TrackerNotFoundError):
        registry.set_active("kitsu")
    assert store.get_config("active_tracker") == "mal"


def test_get_unknown_tracker(store):
    registry = TrackerRegistry(store)

    with pytest.raises(TrackerNotFoundError) as excinfo:
        registry.get("kitsu")
    assert str(excinfo.value) == "Tracker 'kitsu' not found"
    assert "kitsu" not in registry


def test_register_rejects_non_trackers(store):
    registry = TrackerRegistry(store)

    with pytest.raises(TypeError):
        registry.register(object())


def test_names_follow_registration_order(store):
    registry = TrackerRegistry(store, [LocalTracker(store), FakeTracker(name="mal"), FakeTracker(name="anilist")])

    assert registry.names() == ["local", "mal", "anilist"]


def test_fan_out_skips_unauthenticated(store):
    """Trackers without credentials are neither pulled nor reported."""
    online = FakeTracker(name="anilist", entries=[make_entry("1", last_updated=T0)])
    offline = FakeTracker(name="mal", entries=[make_entry("2", last_updated=T0)], authenticated=False)
    registry = TrackerRegistry(store, [LocalTracker(store), online, offline])

    results = registry.sync_all_from_remote()

    assert set(results) == {"local", "anilist"}
    assert results["anilist"].added == 1
    assert results["local"].changed == 0
    assert offline.list_calls == 0
    assert [t.name for t in registry.authenticated()] == ["local", "anilist"]


def test_fan_out_failure_does_not_stop_other_trackers(store):
    """A failing tracker is reported after every tracker has been attempted."""
    broken = FakeTracker(name="anilist", list_error=RemoteAPIError("502 Bad Gateway", status_code=502))
    healthy = FakeTracker(name="mal", entries=[make_entry("2", last_updated=T0)])
    registry = TrackerRegistry(store, [broken, healthy])

    with pytest.raises(RegistrySyncError) as excinfo:
        registry.sync_all_from_remote()

    error = excinfo.value
    assert set(error.failures) == {"anilist"}
    assert error.stats["mal"].added == 1
    assert error.stats["anilist"].changed == 0
    assert healthy.list_calls == 1


def test_fan_out_reports_authentication_failures(store):
    expired = FakeTracker(name="anilist", list_error=AuthenticationError("token revoked"))
    registry = TrackerRegistry(store, [expired, FakeTracker(name="mal")])

    with pytest.raises(RegistrySyncError) as excinfo:
        registry.sync_all_from_remote()

    assert isinstance(excinfo.value.failures["anilist"], AuthenticationError)
    assert "mal" in excinfo.value.stats


def test_fan_out_isolates_unexpected_errors(store):
    """An exception outside the anitrack hierarchy is reported like any other failure."""
    buggy = FakeTracker(name="anilist", list_error=ValueError("unexpected payload"))
    healthy = FakeTracker(name="mal", entries=[make_entry("2", last_updated=T0)])
    registry = TrackerRegistry(store, [buggy, healthy])

    with pytest.raises(RegistrySyncError) as excinfo:
        registry.sync_all_from_remote()

    assert isinstance(excinfo.value.failures["anilist"], ValueError)
    assert excinfo.value.stats["mal"].added == 1
    assert healthy.list_calls == 1


def test_push_fan_out(store):
    tracker = FakeTracker(name="mal", entries=[make_entry("2", progress=3, last_updated=T0)])
    registry = TrackerRegistry(store, [tracker])
    registry.sync_all_from_remote()

    results = registry.sync_all_to_remote()

    assert results["mal"].updated == 1
    assert tracker.updates[0][0] == "2"


def test_cancelled_fan_out_stops(store):
    tracker = FakeTracker(name="mal", entries=[make_entry("2", last_updated=T0)])
    registry = TrackerRegistry(store, [tracker])
    cancel = CancelToken()
    cancel.cancel()

    assert registry.sync_all_from_remote(cancel) == {}
    assert tracker.list_calls == 0
