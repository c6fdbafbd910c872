"""Tests for the click command-line interface."""

import pytest
from click.testing import CliRunner

from anitrack_sync.cli import main
from anitrack_sync.database import AnimeRecord, TrackingRecord
from anitrack_sync.store import TrackingStore


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "data" / "config.yaml"


@pytest.fixture
def invoke(config_path):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(main, ["--config", str(config_path), *args])

    return _invoke


def _seed(config_path, title="Frieren"):
    """Create an anime with a local tracking row in the CLI's database."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    store = TrackingStore(config_path.parent / "anitrack.db")
    try:
        anime = store.add_anime(AnimeRecord(title=title, total_episodes=28))
        store.add_tracking(TrackingRecord(anime_id=anime.id, tracker="local", status="watching", current_episode=2))
        return anime.id
    finally:
        store.close()


def test_config_set_and_get(invoke):
    result = invoke("config", "set", "tracker_auto_sync", "TRUE")
    assert result.exit_code == 0, result.output

    result = invoke("config", "get", "tracker_auto_sync")
    assert result.exit_code == 0
    assert result.output.strip() == "true"


def test_config_set_validates_known_keys(invoke):
    assert invoke("config", "set", "tracker_auto_sync", "maybe").exit_code == 1
    assert invoke("config", "set", "tracker_sync_interval", "-5").exit_code == 1
    assert invoke("config", "set", "tracker_sync_interval", "30").exit_code == 0


def test_config_get_missing_key(invoke):
    result = invoke("config", "get", "tracker_sync_interval")

    assert result.exit_code == 1


def test_tracker_list_without_credentials(invoke):
    """Only the local tracker is registered until credentials are configured."""
    result = invoke("tracker", "list")

    assert result.exit_code == 0, result.output
    assert "* local" in result.output
    assert "mal" not in result.output


def test_tracker_use_unknown(invoke):
    result = invoke("tracker", "use", "mal")

    assert result.exit_code == 1
    assert "Tracker 'mal' not found" in result.output


def test_set_status_and_list(invoke, config_path):
    anime_id = _seed(config_path)

    result = invoke("set-status", str(anime_id), "completed", "--episode", "28", "--score", "9")
    assert result.exit_code == 0, result.output

    result = invoke("list", "--status", "completed")
    assert result.exit_code == 0
    assert "Frieren" in result.output
    assert "28/28" in result.output


def test_progress_updates_local_ledger(invoke, config_path):
    anime_id = _seed(config_path)

    result = invoke("progress", str(anime_id), "3")
    assert result.exit_code == 0, result.output

    store = TrackingStore(config_path.parent / "anitrack.db")
    try:
        assert store.get_tracking(anime_id, "local").current_episode == 3
        assert store.get_episode_progress(anime_id, 3).watched is True
    finally:
        store.close()

    result = invoke("recent")
    assert "Frieren" in result.output


def test_auth_requires_credentials(invoke):
    result = invoke("auth", "mal")

    assert result.exit_code == 1


def test_export_then_import_into_fresh_config(invoke, config_path, tmp_path):
    anime_id = _seed(config_path)
    backup = tmp_path / "ledger.json"

    result = invoke("export", str(backup))
    assert result.exit_code == 0, result.output
    assert "1 anime" in result.output

    other_config = tmp_path / "other" / "config.yaml"
    result = CliRunner().invoke(main, ["--config", str(other_config), "import", str(backup)])
    assert result.exit_code == 0, result.output
    assert "1 anime_tracking" in result.output

    store = TrackingStore(other_config.parent / "anitrack.db")
    try:
        assert store.get_anime(anime_id).title == "Frieren"
        assert store.get_tracking(anime_id, "local").current_episode == 2
    finally:
        store.close()


def test_import_rejects_malformed_file(invoke, tmp_path):
    backup = tmp_path / "ledger.json"
    backup.write_text("not json", encoding="utf-8")

    result = invoke("import", str(backup))

    assert result.exit_code == 1
    assert "Invalid backup file" in result.output
