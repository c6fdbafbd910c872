"""Tracker backed only by the local store."""

import logging
from typing import Optional

from .cancellation import CancelToken
from .constants import TrackerName
from .database import AnimeRecord, TrackingRecord, utcnow
from .exceptions import LocalStoreError, ValidationError
from .models import AnimeInfo, SyncStats, UserAnimeEntry, WatchStatus
from .store import TrackingStore

logger = logging.getLogger(__name__)


def _anime_id(external_id: str) -> int:
    try:
        return int(str(external_id).strip())
    except ValueError:
        raise ValidationError(f"Local anime IDs are integers, got {external_id!r}") from None


def record_to_info(anime: AnimeRecord) -> AnimeInfo:
    """Convert a stored anime to the tracker-neutral metadata model."""
    return AnimeInfo(
        id=str(anime.id),
        title=anime.title,
        japanese_title=anime.original_title,
        alternative_titles=list(anime.alternative_titles or []),
        synopsis=anime.description,
        media_type=anime.type,
        airing_status=anime.status,
        episodes=anime.total_episodes,
        season=anime.season,
        year=anime.year,
        genres=list(anime.genres or []),
        image_url=anime.thumbnail_url,
    )


class LocalTracker:
    """The user's own ledger. Always authenticated; nothing to reconcile."""

    name = TrackerName.LOCAL.value

    def __init__(self, store: TrackingStore):
        self.store = store

    def is_authenticated(self) -> bool:
        return True

    def authenticate(self, cancel: Optional[CancelToken] = None) -> None:
        pass

    def search_anime(
        self, query: str, limit: int = 10, cancel: Optional[CancelToken] = None
    ) -> list[AnimeInfo]:
        return [record_to_info(anime) for anime in self.store.search_anime(query, limit)]

    def get_anime_details(self, external_id: str, cancel: Optional[CancelToken] = None) -> AnimeInfo:
        anime = self.store.get_anime(_anime_id(external_id))
        if anime is None:
            raise LocalStoreError(f"Anime {external_id} not found")
        return record_to_info(anime)

    def get_user_anime_list(self, cancel: Optional[CancelToken] = None) -> list[UserAnimeEntry]:
        entries = []
        for tracking in self.store.list_trackings_for_tracker(self.name):
            anime = self.store.get_anime(tracking.anime_id)
            if anime is None:
                continue
            entries.append(self._to_entry(anime, tracking))
        return entries

    @staticmethod
    def _to_entry(anime: AnimeRecord, tracking: TrackingRecord) -> UserAnimeEntry:
        info = record_to_info(anime)
        return UserAnimeEntry(
            **info.model_dump(),
            status=WatchStatus.parse(tracking.status),
            score=tracking.score or 0,
            progress=tracking.current_episode or 0,
            last_updated=tracking.last_updated,
        )

    def update_anime_status(
        self,
        external_id: str,
        status: WatchStatus,
        episode: float = 0,
        score: float = 0,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        """Create or update the local tracking row for an anime."""
        anime_id = _anime_id(external_id)
        if score < 0 or score > 10:
            raise ValidationError(f"Score must be between 0 and 10, got {score}")
        if episode < 0:
            raise ValidationError(f"Episode must not be negative, got {episode}")
        if self.store.get_anime(anime_id) is None:
            raise LocalStoreError(f"Anime {anime_id} not found")

        fields = {"status": WatchStatus(status).value, "last_updated": utcnow()}
        if episode > 0:
            fields["current_episode"] = episode
        if score > 0:
            fields["score"] = score
        self.store.upsert_tracking(anime_id, self.name, **fields)
        logger.debug(f"Updated local status of anime {anime_id}: {fields['status']}")

    def sync_from_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats:
        return SyncStats()

    def sync_to_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats:
        return SyncStats()
