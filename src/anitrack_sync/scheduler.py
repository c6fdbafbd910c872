"""Background scheduler running periodic reconciliation passes."""

import logging
import threading
from typing import Optional

from .cancellation import CancelToken
from .constants import (
    AUTO_SYNC_KEY,
    DEFAULT_SYNC_INTERVAL_MINUTES,
    MIN_SYNC_INTERVAL_MINUTES,
    PUSH_ON_DEMAND_TIMEOUT_SECONDS,
    SYNC_INTERVAL_KEY,
    SYNC_PASS_TIMEOUT_SECONDS,
    TrackerName,
)
from .exceptions import (
    AnitrackError,
    LocalStoreError,
    RegistrySyncError,
    StoreUnavailableError,
    TrackerNotFoundError,
    ValidationError,
)
from .models import SyncStats, WatchStatus
from .registry import TrackerRegistry
from .store import TrackingStore

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs pull-then-push passes over all authenticated trackers on a timer.

    A single daemon thread waits ``tracker_sync_interval`` minutes between
    passes. Passes never overlap: a tick (or manual ``run_once``) that comes
    in while another pass holds the lock is dropped, not queued.
    """

    def __init__(
        self,
        store: TrackingStore,
        registry: TrackerRegistry,
        pass_timeout: float = SYNC_PASS_TIMEOUT_SECONDS,
        push_timeout: float = PUSH_ON_DEMAND_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.registry = registry
        self.pass_timeout = pass_timeout
        self.push_timeout = push_timeout

        self._state_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._current_cancel: Optional[CancelToken] = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def interval_minutes(self) -> int:
        """Configured tick period, clamped to the minimum."""
        raw = self.store.get_config(SYNC_INTERVAL_KEY)
        interval = DEFAULT_SYNC_INTERVAL_MINUTES
        if raw:
            try:
                interval = int(raw)
            except ValueError:
                logger.warning(f"Invalid {SYNC_INTERVAL_KEY} {raw!r}, using {DEFAULT_SYNC_INTERVAL_MINUTES}")
        if interval < MIN_SYNC_INTERVAL_MINUTES:
            logger.info(f"Sync interval {interval} min is below the minimum, using {MIN_SYNC_INTERVAL_MINUTES}")
            interval = MIN_SYNC_INTERVAL_MINUTES
        return interval

    def auto_sync_enabled(self) -> bool:
        return (self.store.get_config(AUTO_SYNC_KEY) or "").strip().lower() == "true"

    def start(self) -> None:
        """Start the background loop; a no-op when it is already running."""
        with self._state_lock:
            if self.is_running:
                logger.debug("Sync scheduler already running")
                return

            interval = self.interval_minutes()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(interval * 60, self._stop_event),
                name="anitrack-sync-scheduler",
                daemon=True,
            )
            self._thread.start()
            logger.info(f"Sync scheduler started (every {interval} min)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and cancel an in-flight pass; a no-op when not running."""
        with self._state_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            current = self._current_cancel
            if current is not None:
                current.cancel()
            self._thread = None

        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Sync scheduler stopped")

    def _loop(self, interval_seconds: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval_seconds):
            try:
                self.run_once()
            except AnitrackError as e:
                logger.error(f"Scheduled sync failed: {e}")
            except Exception as e:
                # Keep the loop alive; the next tick retries
                logger.exception(f"Unexpected error in scheduled sync: {e}")

    def run_once(self, force: bool = False) -> Optional[dict[str, SyncStats]]:
        """Run one pull-then-push pass over every authenticated tracker.

        Returns the merged stats per tracker, an empty dict when auto sync is
        disabled (unless ``force``), or None when another pass is in progress.
        """
        if not force and not self.auto_sync_enabled():
            logger.debug("Auto sync disabled, skipping pass")
            return {}

        if not self._pass_lock.acquire(blocking=False):
            logger.info("Previous sync pass still running, skipping this one")
            return None

        cancel = CancelToken(timeout=self.pass_timeout)
        self._current_cancel = cancel
        try:
            pulled = self._run_phase("pull", self.registry.sync_all_from_remote, cancel)
            pushed = self._run_phase("push", self.registry.sync_all_to_remote, cancel)
        finally:
            self._current_cancel = None
            self._pass_lock.release()

        results = dict(pulled)
        for name, stats in pushed.items():
            results[name] = results[name].merge(stats) if name in results else stats

        for name, stats in results.items():
            logger.info(f"Sync pass for {name}: {stats.summary()}")
        return results

    @staticmethod
    def _run_phase(label, fan_out, cancel: CancelToken) -> dict[str, SyncStats]:
        try:
            return fan_out(cancel)
        except RegistrySyncError as e:
            for name, error in e.failures.items():
                logger.error(f"Sync ({label}) failed for {name}: {error}")
            return e.stats

    def push_episode_progress(self, anime_id: int, episode: float) -> SyncStats:
        """Send new episode progress for one anime to every tracker tracking it.

        Local tracking rows are updated even when a remote update fails, so
        the next push pass retries it.
        """
        if episode < 0:
            raise ValidationError(f"Episode must not be negative, got {episode}")

        stats = SyncStats()
        trackings = self.store.list_trackings_for_anime(anime_id)
        if not trackings:
            return stats

        cancel = CancelToken(timeout=self.push_timeout)
        for tracking in trackings:
            if tracking.tracker != TrackerName.LOCAL.value:
                try:
                    tracker = self.registry.get(tracking.tracker)
                except TrackerNotFoundError:
                    stats.record_skipped(f"Tracker '{tracking.tracker}' is not configured")
                    continue
                if not tracker.is_authenticated():
                    stats.record_skipped(f"Not authenticated with {tracking.tracker}")
                    continue

                try:
                    tracker.update_anime_status(
                        tracking.tracker_id,
                        WatchStatus.parse(tracking.status),
                        episode,
                        tracking.score,
                        cancel,
                    )
                    stats.record_updated(f"Updated {tracking.tracker} entry {tracking.tracker_id} to ep {episode:g}")
                except AnitrackError as e:
                    stats.record_error(f"Failed to update progress on {tracking.tracker}: {e}")
                    logger.warning(f"Failed to update progress on {tracking.tracker}: {e}")

            try:
                self.store.update_tracking_progress(anime_id, tracking.tracker, episode)
            except StoreUnavailableError:
                raise
            except LocalStoreError as e:
                stats.record_error(f"Failed to save {tracking.tracker} progress locally: {e}")
                logger.warning(f"Failed to save {tracking.tracker} progress of anime {anime_id} locally: {e}")

        return stats
