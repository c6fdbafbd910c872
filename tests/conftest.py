"""Shared pytest fixtures."""

import pytest
import requests

from anitrack_sync.oauth import TokenManager
from anitrack_sync.store import TrackingStore

from fakes import FakeHTTP


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite-backed store per test."""
    tracking_store = TrackingStore(tmp_path / "anitrack.db")
    yield tracking_store
    tracking_store.close()


@pytest.fixture
def token_manager(tmp_path):
    return TokenManager(tmp_path / "tokens.json")


@pytest.fixture
def http(monkeypatch):
    """Serve queued FakeResponses instead of hitting the network."""
    fake = FakeHTTP()

    def fake_request(self, method, url, *args, **kwargs):
        return fake.request(method, url, *args, **kwargs)

    monkeypatch.setattr(requests.Session, "request", fake_request)
    return fake
