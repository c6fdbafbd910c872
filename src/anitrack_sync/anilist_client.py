"""AniList GraphQL tracker."""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from .cancellation import CancelToken
from .constants import DEFAULT_REQUEST_TIMEOUT_SECONDS, TrackerName
from .exceptions import RemoteAPIError, ValidationError
from .models import AnimeInfo, UserAnimeEntry, WatchStatus
from .oauth import OAuthSession
from .tracker import RemoteTracker

logger = logging.getLogger(__name__)

MEDIA_FIELDS = """
    id
    title { userPreferred romaji english native }
    synonyms
    description(asHtml: false)
    format
    episodes
    status
    season
    seasonYear
    genres
    averageScore
    coverImage { large }
    startDate { year month day }
    endDate { year month day }
    studios(isMain: true) { nodes { name } }
"""

VIEWER_QUERY = """
query {
  Viewer { id name }
}
"""

LIST_QUERY = """
query ($userId: Int) {
  MediaListCollection(userId: $userId, type: ANIME) {
    lists {
      entries {
        status
        score(format: POINT_10_DECIMAL)
        progress
        notes
        startedAt { year month day }
        completedAt { year month day }
        updatedAt
        media { %s }
      }
    }
  }
}
""" % MEDIA_FIELDS

SEARCH_QUERY = """
query ($search: String, $perPage: Int) {
  Page(perPage: $perPage) {
    media(search: $search, type: ANIME) { %s }
  }
}
""" % MEDIA_FIELDS

DETAILS_QUERY = """
query ($id: Int) {
  Media(id: $id, type: ANIME) { %s }
}
""" % MEDIA_FIELDS

SAVE_MUTATION = """
mutation ($mediaId: Int, $status: MediaListStatus, $progress: Int, $scoreRaw: Int) {
  SaveMediaListEntry(mediaId: $mediaId, status: $status, progress: $progress, scoreRaw: $scoreRaw) {
    id
  }
}
"""

STATUS_MAP = {
    "CURRENT": WatchStatus.WATCHING,
    "REPEATING": WatchStatus.WATCHING,
    "COMPLETED": WatchStatus.COMPLETED,
    "PAUSED": WatchStatus.ON_HOLD,
    "DROPPED": WatchStatus.DROPPED,
    "PLANNING": WatchStatus.PLAN_TO_WATCH,
}

REVERSE_STATUS_MAP = {
    WatchStatus.WATCHING: "CURRENT",
    WatchStatus.COMPLETED: "COMPLETED",
    WatchStatus.ON_HOLD: "PAUSED",
    WatchStatus.DROPPED: "DROPPED",
    WatchStatus.PLAN_TO_WATCH: "PLANNING",
}


def _fuzzy_date(value: Optional[dict]) -> Optional[date]:
    """Convert an AniList FuzzyDate; partial dates are dropped."""
    if not value or not all(value.get(k) for k in ("year", "month", "day")):
        return None
    try:
        return date(value["year"], value["month"], value["day"])
    except ValueError:
        return None


def _describe_entry(entry) -> str:
    media = entry.get("media") if isinstance(entry, dict) else None
    if isinstance(media, dict):
        return f"{media.get('id')} ({(media.get('title') or {}).get('userPreferred')})"
    return repr(entry)[:80]


def _media_id(external_id: str) -> int:
    try:
        return int(str(external_id).strip())
    except ValueError:
        raise ValidationError(f"AniList media IDs are integers, got {external_id!r}") from None


class AniListTracker(RemoteTracker):
    """Tracker for the AniList GraphQL API."""

    BASE_URL = "https://graphql.anilist.co"
    name = TrackerName.ANILIST.value
    service_name = "AniList"

    def __init__(self, auth: OAuthSession, request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS):
        """Initialize AniList tracker with an OAuth session."""
        super().__init__(
            auth=auth,
            base_url=self.BASE_URL,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            request_timeout=request_timeout,
        )
        self._viewer_id: Optional[int] = None

    def _query(self, query: str, variables: Optional[dict] = None, cancel: Optional[CancelToken] = None) -> dict:
        """Execute a GraphQL query."""
        payload = {"query": query}
        if variables:
            payload["variables"] = variables

        response = self._request("POST", self.base_url, cancel, json=payload)
        data = self._json(response)
        if data.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in data["errors"])
            logger.error(f"GraphQL errors: {messages}")
            raise RemoteAPIError(f"AniList GraphQL error: {messages}", status_code=response.status_code)

        return data.get("data") or {}

    def get_viewer_id(self, cancel: Optional[CancelToken] = None) -> int:
        """ID of the authenticated user, cached after the first lookup."""
        if self._viewer_id is None:
            viewer = self._query(VIEWER_QUERY, cancel=cancel).get("Viewer") or {}
            if not viewer.get("id"):
                raise RemoteAPIError("AniList did not return the current user")
            self._viewer_id = viewer["id"]
            logger.debug(f"AniList viewer: {viewer.get('name')} ({self._viewer_id})")
        return self._viewer_id

    def get_user_anime_list(self, cancel: Optional[CancelToken] = None) -> list[UserAnimeEntry]:
        """Fetch the authenticated user's anime list from AniList."""
        variables = {"userId": self.get_viewer_id(cancel)}
        data = self._query(LIST_QUERY, variables, cancel)

        self.rejected_entries = []
        entries = []
        collection = data.get("MediaListCollection") or {}
        for list_group in collection.get("lists") or []:
            entries.extend(self._parse_list(list_group.get("entries") or [], self._parse_entry, _describe_entry))

        logger.info(f"Fetched {len(entries)} anime entries from AniList")
        return entries

    def search_anime(
        self, query: str, limit: int = 10, cancel: Optional[CancelToken] = None
    ) -> list[AnimeInfo]:
        """Search AniList anime by title."""
        data = self._query(SEARCH_QUERY, {"search": query, "perPage": limit}, cancel)
        media = (data.get("Page") or {}).get("media") or []
        return [self._parse_media(m) for m in media]

    def get_anime_details(self, external_id: str, cancel: Optional[CancelToken] = None) -> AnimeInfo:
        data = self._query(DETAILS_QUERY, {"id": _media_id(external_id)}, cancel)
        media = data.get("Media")
        if not media:
            raise RemoteAPIError(f"AniList media {external_id} not found")
        return self._parse_media(media)

    def update_anime_status(
        self,
        external_id: str,
        status: WatchStatus,
        episode: float = 0,
        score: float = 0,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        """Save a list entry on AniList; zero episode/score are left unchanged."""
        variables = {
            "mediaId": _media_id(external_id),
            "status": REVERSE_STATUS_MAP[WatchStatus(status)],
        }
        if int(episode) > 0:
            variables["progress"] = int(episode)
        if score > 0:
            # scoreRaw is always on the 100 point scale, whatever the user's format
            variables["scoreRaw"] = int(round(score * 10))

        self._query(SAVE_MUTATION, variables, cancel)
        logger.info(f"Updated AniList entry {external_id}: {variables['status']}")

    def _parse_media(self, media: dict) -> AnimeInfo:
        """Parse AniList media to the common metadata model."""
        return AnimeInfo(**self._media_fields(media))

    def _media_fields(self, media: dict) -> dict:
        # A missing id stays empty so the entry fails external ID validation
        media_id = "" if media.get("id") is None else str(media["id"])
        titles = media.get("title") or {}
        title = (
            titles.get("userPreferred")
            or titles.get("romaji")
            or titles.get("english")
            or titles.get("native")
            or media_id
        )

        alternatives = []
        for alt in [titles.get("english"), titles.get("romaji"), titles.get("native"), *(media.get("synonyms") or [])]:
            if alt and alt != title and alt not in alternatives:
                alternatives.append(alt)

        average = media.get("averageScore")
        studios = ((media.get("studios") or {}).get("nodes")) or []

        return {
            "id": media_id,
            "title": title,
            "english_title": titles.get("english"),
            "japanese_title": titles.get("native"),
            "alternative_titles": alternatives,
            "synopsis": media.get("description"),
            "media_type": media.get("format"),
            "airing_status": media.get("status"),
            "episodes": media.get("episodes"),
            "start_date": _fuzzy_date(media.get("startDate")),
            "end_date": _fuzzy_date(media.get("endDate")),
            "season": (media.get("season") or "").lower() or None,
            "year": media.get("seasonYear"),
            "rating": average / 10 if average else None,
            "genres": list(media.get("genres") or []),
            "studios": [s["name"] for s in studios if s.get("name")],
            "image_url": (media.get("coverImage") or {}).get("large"),
        }

    def _parse_entry(self, entry: dict) -> UserAnimeEntry:
        """Parse AniList list entry to the common model."""
        # updatedAt is a unix timestamp; 0 means never
        updated_at = None
        if entry.get("updatedAt"):
            updated_at = datetime.fromtimestamp(entry["updatedAt"], tz=timezone.utc)

        return UserAnimeEntry(
            **self._media_fields(entry.get("media") or {}),
            status=STATUS_MAP.get(entry.get("status"), WatchStatus.WATCHING),
            score=entry.get("score") or 0,
            progress=entry.get("progress") or 0,
            started_at=_fuzzy_date(entry.get("startedAt")),
            finished_at=_fuzzy_date(entry.get("completedAt")),
            last_updated=updated_at,
            notes=entry.get("notes"),
        )
