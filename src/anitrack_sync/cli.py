"""Command-line interface for anitrack-sync."""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from .anilist_client import AniListTracker
from .cancellation import CancelToken
from .config import Settings, configured_trackers, validate_credentials
from .constants import AUTO_SYNC_KEY, SYNC_INTERVAL_KEY, SyncDirection, TrackerName
from .database import EpisodeProgress, utcnow
from .exceptions import AnitrackError, RegistrySyncError, SyncError, ValidationError
from .local_tracker import LocalTracker
from .mal_client import MALTracker
from .models import SyncStats, WatchStatus
from .oauth import CALLBACK_TIMEOUT_SECONDS, AniListOAuth, MALOAuth, OAuthSession, TokenManager
from .reconcile import pull_from_remote
from .registry import TrackerRegistry
from .scheduler import SyncScheduler
from .store import TrackingStore
from .tracker import RemoteTracker

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(level: str):
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


class AppContext:
    """Lazily wires settings, store, trackers and scheduler for one command."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path
        self._settings: Optional[Settings] = None
        self._store: Optional[TrackingStore] = None
        self._registry: Optional[TrackerRegistry] = None
        self._scheduler: Optional[SyncScheduler] = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings(self.config_path)
        return self._settings

    @property
    def store(self) -> TrackingStore:
        if self._store is None:
            self._store = TrackingStore(self.settings.database_path)
        return self._store

    @property
    def registry(self) -> TrackerRegistry:
        if self._registry is None:
            self._registry = build_registry(self.settings, self.store)
        return self._registry

    @property
    def scheduler(self) -> SyncScheduler:
        if self._scheduler is None:
            self._scheduler = SyncScheduler(
                self.store,
                self.registry,
                pass_timeout=self.settings.sync.pass_timeout,
                push_timeout=self.settings.sync.push_timeout,
            )
        return self._scheduler

    def close(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._store is not None:
            self._store.close()


def build_registry(settings: Settings, store: TrackingStore) -> TrackerRegistry:
    """Register the local tracker plus every remote tracker with credentials."""
    registry = TrackerRegistry(store, [LocalTracker(store)])
    token_manager = TokenManager(settings.token_file)
    timeout = settings.sync.request_timeout
    enabled = configured_trackers(settings)

    if TrackerName.ANILIST.value in enabled:
        auth = OAuthSession(AniListOAuth(settings.anilist, settings.oauth), token_manager, settings.oauth)
        registry.register(AniListTracker(auth, request_timeout=timeout))
    if TrackerName.MAL.value in enabled:
        auth = OAuthSession(MALOAuth(settings.mal, settings.oauth), token_manager, settings.oauth)
        registry.register(MALTracker(auth, request_timeout=timeout))

    return registry


pass_app = click.make_pass_decorator(AppContext)


def _fail(message: str, exit_code: int = 1):
    click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code)


def _print_stats(name: str, stats: SyncStats, verbose: bool = False):
    click.echo(f"{name}: {stats.summary()}")
    if verbose:
        for detail in stats.details:
            click.echo(f"  - {detail}")


def _show_config_error(settings: Settings, missing: list[str]):
    """Display configuration error message."""
    logger.error("=" * 60)
    logger.error("CONFIGURATION ERROR: Missing or invalid credentials")
    logger.error("=" * 60)
    for var in missing:
        logger.error(f"  - {var}")
    logger.error("")
    logger.error("  1. Get AniList credentials: https://anilist.co/settings/developer")
    logger.error("  2. Get MAL credentials: https://myanimelist.net/apiconfig")
    logger.error(f"  3. Edit {settings.config_path} with your credentials")
    logger.error("=" * 60)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yaml (default: data/config.yaml or $ANITRACK_CONFIG)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (default: from config)",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]):
    """Keep a local anime watch ledger in sync with AniList and MyAnimeList."""
    app = AppContext(config_path)
    ctx.obj = app
    ctx.call_on_close(app.close)
    try:
        setup_logging(log_level or app.settings.log_level)
    except Exception as e:
        setup_logging("INFO")
        _fail(f"Failed to load configuration: {e}")


@main.command()
@click.argument(
    "service",
    type=click.Choice([TrackerName.ANILIST.value, TrackerName.MAL.value, "all"]),
    default="all",
)
@pass_app
def auth(app: AppContext, service: str):
    """Interactive OAuth login for AniList and/or MyAnimeList."""
    services = [TrackerName.ANILIST.value, TrackerName.MAL.value] if service == "all" else [service]
    problems = validate_credentials(app.settings)
    missing = [field for name in services for field in problems[name]]
    if missing:
        _show_config_error(app.settings, missing)
        sys.exit(1)

    click.echo("=== OAuth Authentication Setup ===\n")
    success = True
    for name in services:
        tracker = app.registry.get(name)
        try:
            tracker.authenticate(CancelToken(timeout=CALLBACK_TIMEOUT_SECONDS))
            click.echo(f"Authenticated with {name}")
        except AnitrackError as e:
            success = False
            click.echo(f"{name} authentication failed: {e}", err=True)

    if not success:
        sys.exit(1)
    click.echo(f"\nTokens saved to {app.settings.token_file}")


@main.command()
@click.option("--tracker", "tracker_name", default=None, help="Only sync this tracker (default: all)")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.BOTH.value,
    help="pull (remote to local), push (local to remote) or both",
)
@click.option("-v", "--verbose", is_flag=True, help="Print one line per change")
@pass_app
def sync(app: AppContext, tracker_name: Optional[str], direction: str, verbose: bool):
    """Run one reconciliation pass now."""
    store = app.store
    registry = app.registry
    cancel = CancelToken(timeout=app.settings.sync.pass_timeout)
    failed = False

    phases = []
    if direction in (SyncDirection.PULL.value, SyncDirection.BOTH.value):
        phases.append(("pull", registry.sync_all_from_remote, lambda t: t.sync_from_remote(store, cancel)))
    if direction in (SyncDirection.PUSH.value, SyncDirection.BOTH.value):
        phases.append(("push", registry.sync_all_to_remote, lambda t: t.sync_to_remote(store, cancel)))

    for label, fan_out, single in phases:
        click.echo(f"== {label} ==")
        try:
            if tracker_name:
                tracker = registry.get(tracker_name)
                if not tracker.is_authenticated():
                    _fail(f"Not authenticated with {tracker_name}; run 'anitrack-sync auth {tracker_name}'")
                results = {tracker_name: single(tracker)}
            else:
                results = fan_out(cancel)
        except SyncError as e:
            failed = True
            results = {e.tracker or tracker_name: e.stats or SyncStats()}
            click.echo(f"{label} failed: {e}", err=True)
        except RegistrySyncError as e:
            failed = True
            results = e.stats
            for name, error in e.failures.items():
                click.echo(f"{label} failed for {name}: {error}", err=True)
        except AnitrackError as e:
            _fail(str(e))

        for name, stats in results.items():
            _print_stats(name, stats, verbose)

    if failed:
        sys.exit(1)


@main.command()
@click.option("--now", is_flag=True, help="Run a pass immediately before waiting for the first tick")
@pass_app
def run(app: AppContext, now: bool):
    """Run the background sync scheduler until interrupted."""
    scheduler = app.scheduler
    if not scheduler.auto_sync_enabled():
        logger.warning(
            f"'{AUTO_SYNC_KEY}' is not 'true'; passes will be skipped. "
            f"Enable with: anitrack-sync config set {AUTO_SYNC_KEY} true"
        )

    logger.info("=" * 60)
    logger.info("Starting anitrack-sync scheduler")
    logger.info(f"Trackers: {', '.join(app.registry.names())}")
    logger.info(f"Interval: {scheduler.interval_minutes()} minutes")
    logger.info("=" * 60)

    if now:
        scheduler.run_once(force=True)

    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")
    finally:
        scheduler.stop()


@main.group()
def tracker():
    """Inspect and select trackers."""


@tracker.command("list")
@pass_app
def tracker_list(app: AppContext):
    """List registered trackers and their authentication state."""
    active = app.registry.get_active().name
    for name in app.registry.names():
        t = app.registry.get(name)
        marker = "*" if name == active else " "
        state = "authenticated" if t.is_authenticated() else "not authenticated"
        click.echo(f"{marker} {name:<10} {state}")


@tracker.command("active")
@pass_app
def tracker_active(app: AppContext):
    """Print the active tracker."""
    click.echo(app.registry.get_active().name)


@tracker.command("use")
@click.argument("name")
@pass_app
def tracker_use(app: AppContext, name: str):
    """Make NAME the active tracker."""
    try:
        app.registry.set_active(name)
    except AnitrackError as e:
        _fail(str(e))
    click.echo(f"Active tracker: {name}")


@main.command()
@click.argument("query")
@click.option("--tracker", "tracker_name", default=None, help="Tracker to search (default: active)")
@click.option("--limit", type=int, default=10, show_default=True)
@pass_app
def search(app: AppContext, query: str, tracker_name: Optional[str], limit: int):
    """Search anime by title."""
    try:
        t = app.registry.get(tracker_name) if tracker_name else app.registry.get_active()
        results = t.search_anime(query, limit, CancelToken(timeout=app.settings.sync.request_timeout))
    except AnitrackError as e:
        _fail(str(e))

    if not results:
        click.echo("No results")
        return
    for info in results:
        episodes = info.episodes if info.episodes is not None else "?"
        click.echo(f"{info.id:>8}  {info.title}  ({info.media_type or '-'}, {episodes} eps)")


@main.command("list")
@click.option("--tracker", "tracker_name", default=None, help="Tracker whose entries to show (default: active)")
@click.option("--status", type=click.Choice([s.value for s in WatchStatus]), default=None)
@click.option("--refresh", is_flag=True, help="Pull the remote list first")
@pass_app
def list_entries(app: AppContext, tracker_name: Optional[str], status: Optional[str], refresh: bool):
    """Show the local ledger for a tracker."""
    store = app.store
    try:
        t = app.registry.get(tracker_name) if tracker_name else app.registry.get_active()
        if refresh and isinstance(t, RemoteTracker) and t.is_authenticated():
            stats = pull_from_remote(t, store, CancelToken(timeout=app.settings.sync.pass_timeout), push_back=True)
            _print_stats(t.name, stats)
        rows = store.list_trackings_for_tracker(t.name)
    except AnitrackError as e:
        _fail(str(e))

    for row in rows:
        if status and row.status != status:
            continue
        anime = store.get_anime(row.anime_id)
        title = anime.title if anime else f"#{row.anime_id}"
        total = row.total_episodes or (anime.total_episodes if anime else None) or "?"
        score = f"{row.score:g}" if row.score else "-"
        click.echo(f"{row.anime_id:>5}  {row.status:<14} {row.current_episode:g}/{total:<5} {score:>4}  {title}")


@main.command("set-status")
@click.argument("anime_id", type=int)
@click.argument("status", type=click.Choice([s.value for s in WatchStatus]))
@click.option("--episode", type=float, default=0, help="Episode progress (0 = unchanged)")
@click.option("--score", type=float, default=0, help="Score 1-10 (0 = unchanged)")
@click.option("--tracker", "tracker_name", default=None, help="Tracker to update (default: active)")
@pass_app
def set_status(app: AppContext, anime_id: int, status: str, episode: float, score: float, tracker_name: Optional[str]):
    """Set the watch status of a local anime."""
    store = app.store
    watch_status = WatchStatus(status)
    try:
        if not 0 <= score <= 10:
            raise ValidationError(f"Score must be between 0 and 10, got {score}")
        t = app.registry.get(tracker_name) if tracker_name else app.registry.get_active()

        if t.name == TrackerName.LOCAL.value:
            t.update_anime_status(str(anime_id), watch_status, episode, score)
        else:
            tracking = store.get_tracking(anime_id, t.name)
            if tracking is None or not tracking.tracker_id:
                _fail(f"Anime {anime_id} is not on your {t.name} list")

            fields = {"status": watch_status.value, "last_updated": utcnow()}
            if episode > 0:
                fields["current_episode"] = episode
            if score > 0:
                fields["score"] = score
            store.upsert_tracking(anime_id, t.name, **fields)

            try:
                t.update_anime_status(
                    tracking.tracker_id,
                    watch_status,
                    episode,
                    score,
                    CancelToken(timeout=app.settings.sync.push_timeout),
                )
            except AnitrackError as e:
                logger.warning(f"Saved locally; {t.name} update failed and will be retried on the next push: {e}")
    except AnitrackError as e:
        _fail(str(e))

    click.echo(f"Anime {anime_id} on {t.name}: {watch_status.value}")


@main.command()
@click.argument("anime_id", type=int)
@click.argument("episode", type=float)
@pass_app
def progress(app: AppContext, anime_id: int, episode: float):
    """Mark EPISODE of an anime as watched and push it to all trackers."""
    try:
        if app.store.get_anime(anime_id) is None:
            _fail(f"Anime {anime_id} not found")
        app.store.save_episode_progress(
            EpisodeProgress(anime_id=anime_id, episode_number=episode, watched=True, last_watched=utcnow())
        )
        stats = app.scheduler.push_episode_progress(anime_id, episode)
    except AnitrackError as e:
        _fail(str(e))

    _print_stats(f"anime {anime_id}", stats, verbose=True)
    if stats.errors:
        sys.exit(1)


@main.command()
@click.option("--limit", type=int, default=10, show_default=True)
@pass_app
def recent(app: AppContext, limit: int):
    """Show currently watching and recently played anime."""
    click.echo("Currently watching:")
    for anime in app.store.get_currently_watching():
        click.echo(f"  {anime.id:>5}  {anime.title}")
    click.echo("Recently played:")
    for anime in app.store.get_recently_watched(limit):
        click.echo(f"  {anime.id:>5}  {anime.title}")


@main.group()
def config():
    """Read and change runtime settings stored in the database."""


def _validate_config_value(key: str, value: str) -> str:
    if key == AUTO_SYNC_KEY:
        if value.lower() not in ("true", "false"):
            raise ValidationError(f"{key} must be 'true' or 'false'")
        return value.lower()
    if key == SYNC_INTERVAL_KEY:
        if not value.isdigit() or int(value) <= 0:
            raise ValidationError(f"{key} must be a positive number of minutes")
    return value


@config.command("get")
@click.argument("key", required=False)
@pass_app
def config_get(app: AppContext, key: Optional[str]):
    """Print one key, or every key when KEY is omitted."""
    if key:
        value = app.store.get_config(key)
        if value is None:
            _fail(f"'{key}' is not set")
        click.echo(value)
        return
    for k, v in sorted(app.store.get_all_config().items()):
        click.echo(f"{k}={v}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@pass_app
def config_set(app: AppContext, key: str, value: str):
    """Set KEY to VALUE."""
    try:
        app.store.set_config(key, _validate_config_value(key, value))
    except AnitrackError as e:
        _fail(str(e))
    click.echo(f"{key} updated")


def _print_counts(counts: dict[str, int]):
    click.echo(", ".join(f"{count} {table}" for table, count in counts.items()))


@main.command("export")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@pass_app
def export_ledger(app: AppContext, path: Path):
    """Write config, anime, tracking and progress rows to a JSON file."""
    try:
        backup = app.store.export_json(path)
    except AnitrackError as e:
        _fail(str(e))
    click.echo(f"Exported to {path}")
    _print_counts(backup.counts())


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@pass_app
def import_ledger(app: AppContext, path: Path):
    """Restore rows from a JSON file written by export, replacing rows with the same ID."""
    try:
        backup = app.store.import_json(path)
    except AnitrackError as e:
        _fail(str(e))
    click.echo(f"Imported from {path}")
    _print_counts(backup.counts())


if __name__ == "__main__":
    main()
