"""Named trackers, the active-tracker setting and fan-out sync."""

import logging
from typing import Callable, Optional

from .cancellation import CancelToken, never_cancelled
from .constants import ACTIVE_TRACKER_KEY, TrackerName
from .exceptions import AnitrackError, RegistrySyncError, SyncError, TrackerNotFoundError
from .models import SyncStats
from .store import TrackingStore
from .tracker import Tracker

logger = logging.getLogger(__name__)


class TrackerRegistry:
    """Holds every configured tracker by name.

    Fan-out operations visit trackers in registration order and run them one
    after another, never in parallel.
    """

    def __init__(self, store: TrackingStore, trackers: Optional[list[Tracker]] = None):
        self.store = store
        self._trackers: dict[str, Tracker] = {}
        for tracker in trackers or []:
            self.register(tracker)

    def register(self, tracker: Tracker) -> None:
        if not isinstance(tracker, Tracker):
            raise TypeError(f"{tracker!r} does not implement the tracker interface")
        if tracker.name in self._trackers:
            logger.warning(f"Replacing registered tracker '{tracker.name}'")
        self._trackers[tracker.name] = tracker
        logger.debug(f"Registered tracker '{tracker.name}'")

    def get(self, name: str) -> Tracker:
        try:
            return self._trackers[name]
        except KeyError:
            raise TrackerNotFoundError(f"Tracker '{name}' not found") from None

    def __contains__(self, name: str) -> bool:
        return name in self._trackers

    def names(self) -> list[str]:
        return list(self._trackers)

    def authenticated(self) -> list[Tracker]:
        """Trackers that currently report usable credentials."""
        return [t for t in self._trackers.values() if t.is_authenticated()]

    def get_active(self) -> Tracker:
        """Resolve the active tracker, defaulting to (and persisting) local."""
        name = self.store.get_config(ACTIVE_TRACKER_KEY)
        if not name:
            name = TrackerName.LOCAL.value
            self.store.set_config(ACTIVE_TRACKER_KEY, name)
            logger.info("No active tracker configured, using 'local'")
        return self.get(name)

    def set_active(self, name: str) -> None:
        self.get(name)
        self.store.set_config(ACTIVE_TRACKER_KEY, name)
        logger.info(f"Active tracker set to '{name}'")

    def sync_all_from_remote(self, cancel: Optional[CancelToken] = None) -> dict[str, SyncStats]:
        """Pull every authenticated tracker's list into the store."""
        return self._fan_out("pull", lambda t, c: t.sync_from_remote(self.store, c), cancel)

    def sync_all_to_remote(self, cancel: Optional[CancelToken] = None) -> dict[str, SyncStats]:
        """Push local changes to every authenticated tracker."""
        return self._fan_out("push", lambda t, c: t.sync_to_remote(self.store, c), cancel)

    def _fan_out(
        self,
        label: str,
        run: Callable[[Tracker, CancelToken], SyncStats],
        cancel: Optional[CancelToken],
    ) -> dict[str, SyncStats]:
        cancel = cancel or never_cancelled()
        results: dict[str, SyncStats] = {}
        failures: dict[str, Exception] = {}

        for name, tracker in self._trackers.items():
            if cancel.cancelled:
                logger.info(f"Sync ({label}) cancelled before '{name}'")
                break
            if not tracker.is_authenticated():
                logger.debug(f"Skipping '{name}' ({label}): not authenticated")
                continue

            try:
                results[name] = run(tracker, cancel)
            except SyncError as e:
                results[name] = e.stats or SyncStats()
                failures[name] = e
            except AnitrackError as e:
                logger.error(f"Sync ({label}) failed for '{name}': {e}")
                results[name] = SyncStats()
                failures[name] = e
            except Exception as e:
                # Unexpected payloads or bugs in one tracker must not stop the others
                logger.exception(f"Unexpected error during sync ({label}) of '{name}': {e}")
                results[name] = SyncStats()
                failures[name] = e

        if failures:
            raise RegistrySyncError(results, failures)
        return results
