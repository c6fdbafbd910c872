"""Pull and push reconciliation between a tracker and the local store.

Pull merges a full remote snapshot into the store: new titles are added,
records with a strictly newer remote timestamp are overwritten, and local
rows the remote no longer reports are deleted (together with their anime when
nothing else tracks it). Push sends every local row changed since the
tracker's watermark to the remote and then moves the watermark to now.

Both passes count every outcome in a SyncStats and keep going past per-item
failures. A pass-level failure (list fetch failed, store unreachable,
cancellation, authentication lost mid-pass) is raised as SyncError carrying
the stats gathered so far.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from .cancellation import CancelToken, never_cancelled
from .constants import last_sync_key
from .database import AnimeRecord, TrackingRecord, utcnow
from .exceptions import (
    AuthenticationError,
    LocalStoreError,
    OperationCancelledError,
    RemoteAPIError,
    StoreUnavailableError,
    SyncError,
    ValidationError,
)
from .models import SyncStats, UserAnimeEntry, WatchStatus, ensure_utc, validate_external_id
from .store import TrackingStore

if TYPE_CHECKING:
    from .tracker import Tracker

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Per-item failures that are counted and skipped
ITEM_ERRORS = (RemoteAPIError, LocalStoreError, ValidationError)


def anime_fields(entry: UserAnimeEntry) -> dict[str, Any]:
    """AnimeRecord columns taken from a remote entry."""
    alternatives = []
    for title in [entry.english_title, entry.japanese_title, *entry.alternative_titles]:
        if title and title != entry.title and title not in alternatives:
            alternatives.append(title)

    return {
        "title": entry.title,
        "original_title": entry.japanese_title,
        "alternative_titles": alternatives,
        "description": entry.synopsis,
        "total_episodes": entry.episodes,
        "type": entry.media_type,
        "year": entry.year,
        "season": entry.season,
        "status": entry.airing_status,
        "genres": list(entry.genres),
        "thumbnail_url": entry.image_url,
    }


def tracking_fields(entry: UserAnimeEntry, last_updated: datetime) -> dict[str, Any]:
    """TrackingRecord columns taken from a remote entry."""
    return {
        "status": entry.status.value,
        "score": entry.score,
        "current_episode": entry.progress,
        "total_episodes": entry.episodes,
        "last_updated": last_updated,
    }


def _format_episode(value: float) -> str:
    return f"{value:g}"


def _abort(message: str, stats: SyncStats, tracker_name: str, cause: Exception) -> SyncError:
    logger.error(f"{message}: {cause}")
    return SyncError(f"{message}: {cause}", stats=stats, tracker=tracker_name)


def pull_from_remote(
    tracker: "Tracker",
    store: TrackingStore,
    cancel: Optional[CancelToken] = None,
    push_back: bool = False,
) -> SyncStats:
    """Merge the tracker's remote list into the local store.

    With ``push_back`` a local record that is both newer and further ahead
    than the remote one is sent to the remote inline; otherwise that case is
    left to the push pass.
    """
    cancel = cancel or never_cancelled()
    name = tracker.name
    stats = SyncStats()

    logger.info(f"Pulling anime list from {name}...")
    try:
        cancel.raise_if_cancelled()
        remote_entries = tracker.get_user_anime_list(cancel)
        local_rows = store.list_trackings_for_tracker(name)
    except AuthenticationError:
        raise
    except (RemoteAPIError, LocalStoreError, OperationCancelledError) as e:
        raise _abort(f"Failed to load {name} list", stats, name, e) from e

    # Items the tracker could not parse; only remote trackers report them
    for message in getattr(tracker, "rejected_entries", None) or []:
        stats.record_error(message)

    # Index the remote snapshot by external ID
    remote_index: dict[str, UserAnimeEntry] = {}
    for entry in remote_entries:
        try:
            external_id = validate_external_id(entry.id)
        except ValidationError as e:
            stats.record_error(f"Rejected {name} entry '{entry.title}': {e}")
            logger.warning(f"Rejected {name} entry '{entry.title}': {e}")
            continue
        if external_id in remote_index:
            stats.record_skipped(f"Duplicate {name} entry {external_id} ({entry.title}), keeping the last one")
        remote_index[external_id] = entry

    local_index = {row.tracker_id: row for row in local_rows if row.tracker_id}

    try:
        for external_id, entry in remote_index.items():
            cancel.raise_if_cancelled()
            try:
                _merge_entry(tracker, store, external_id, entry, local_index.get(external_id), stats, cancel, push_back)
            except StoreUnavailableError:
                raise
            except ITEM_ERRORS as e:
                stats.record_error(f"Failed to reconcile {entry.title} ({external_id}): {e}")
                logger.warning(f"Failed to reconcile {name} entry {external_id}: {e}")

        for external_id, row in local_index.items():
            if external_id in remote_index:
                continue
            cancel.raise_if_cancelled()
            try:
                _delete_missing(store, name, row, stats)
            except StoreUnavailableError:
                raise
            except LocalStoreError as e:
                stats.record_error(f"Failed to remove {name} entry {external_id}: {e}")
                logger.warning(f"Failed to remove {name} entry {external_id}: {e}")
    except (StoreUnavailableError, OperationCancelledError, AuthenticationError) as e:
        raise _abort(f"Pull from {name} stopped", stats, name, e) from e

    logger.info(f"Pulled from {name}: {stats.summary()}")
    return stats


def _merge_entry(
    tracker: "Tracker",
    store: TrackingStore,
    external_id: str,
    entry: UserAnimeEntry,
    local: Optional[TrackingRecord],
    stats: SyncStats,
    cancel: CancelToken,
    push_back: bool,
) -> None:
    name = tracker.name

    if local is None:
        tracking = TrackingRecord(
            tracker=name,
            tracker_id=external_id,
            **tracking_fields(entry, entry.last_updated or utcnow()),
        )
        store.create_anime_with_tracking(AnimeRecord(**anime_fields(entry)), tracking)
        stats.record_added(
            f"Added {entry.title} from {name} ({entry.status.value}, ep {_format_episode(entry.progress)})"
        )
        logger.debug(f"Added {name} entry {external_id}: {entry.title}")
        return

    remote_updated = entry.last_updated or EPOCH
    local_updated = ensure_utc(local.last_updated) or EPOCH

    if remote_updated > local_updated:
        detail = (
            f"Updated {entry.title} from {name} ({entry.status.value}, "
            f"ep {_format_episode(entry.progress)})"
        )
        if entry.progress < local.current_episode:
            logger.warning(
                f"{name} reports lower progress for {entry.title} "
                f"({_format_episode(local.current_episode)} -> {_format_episode(entry.progress)}), "
                "applying the newer remote entry"
            )
            detail += (
                f", progress decreased from {_format_episode(local.current_episode)}"
            )
        store.apply_tracking_update(
            local.id, tracking_fields(entry, remote_updated), anime_fields(entry)
        )
        stats.record_updated(detail)
        logger.debug(f"Updated {name} entry {external_id}: {entry.title}")
        return

    if push_back and local_updated > remote_updated and local.current_episode > entry.progress:
        status = WatchStatus.parse(local.status)
        tracker.update_anime_status(external_id, status, local.current_episode, local.score, cancel)
        stats.record_updated(
            f"Updated {entry.title} on {name} (remote): ep {_format_episode(local.current_episode)}"
        )
        logger.debug(f"Pushed local progress of {entry.title} back to {name}")
        return

    stats.record_skipped()


def _delete_missing(store: TrackingStore, name: str, row: TrackingRecord, stats: SyncStats) -> None:
    anime_deleted = store.delete_tracking(row.anime_id, name)
    detail = f"Removed {name} entry {row.tracker_id} (anime {row.anime_id})"
    if anime_deleted:
        detail += ", anime no longer tracked and deleted"
    stats.record_deleted(detail)
    logger.debug(detail)


def read_watermark(store: TrackingStore, tracker_name: str) -> Optional[datetime]:
    """Return the push watermark, or None when the tracker was never synced."""
    value = store.get_config(last_sync_key(tracker_name))
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Ignoring malformed {tracker_name} sync watermark {value!r}")
        return None


def write_watermark(store: TrackingStore, tracker_name: str) -> None:
    store.set_config(last_sync_key(tracker_name), utcnow().isoformat())


def push_to_remote(
    tracker: "Tracker",
    store: TrackingStore,
    cancel: Optional[CancelToken] = None,
) -> SyncStats:
    """Send every local row changed since the watermark to the tracker."""
    cancel = cancel or never_cancelled()
    name = tracker.name
    stats = SyncStats()

    logger.info(f"Pushing local changes to {name}...")
    try:
        cancel.raise_if_cancelled()
        watermark = read_watermark(store, name)
        rows = store.list_trackings_for_tracker(name)
    except (LocalStoreError, OperationCancelledError) as e:
        raise _abort(f"Failed to read local {name} entries", stats, name, e) from e

    try:
        for row in rows:
            cancel.raise_if_cancelled()
            updated = ensure_utc(row.last_updated)
            if watermark is not None and updated is not None and updated <= watermark:
                stats.record_skipped()
                continue
            try:
                external_id = validate_external_id(row.tracker_id)
                status = WatchStatus.parse(row.status)
                tracker.update_anime_status(external_id, status, row.current_episode, row.score, cancel)
            except (RemoteAPIError, ValidationError) as e:
                stats.record_error(f"Failed to push anime {row.anime_id} to {name}: {e}")
                logger.warning(f"Failed to push anime {row.anime_id} to {name}: {e}")
                continue
            stats.record_updated(
                f"Pushed {external_id} to {name} ({status.value}, ep {_format_episode(row.current_episode)})"
            )

        write_watermark(store, name)
    except (LocalStoreError, OperationCancelledError, AuthenticationError) as e:
        raise _abort(f"Push to {name} stopped", stats, name, e) from e

    logger.info(f"Pushed to {name}: {stats.summary()}")
    return stats
