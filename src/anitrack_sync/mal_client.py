"""MyAnimeList API v2 tracker."""

import logging
from datetime import date, datetime
from typing import Optional

from .cancellation import CancelToken, never_cancelled
from .constants import DEFAULT_REQUEST_TIMEOUT_SECONDS, MAL_PAGE_SIZE, TrackerName
from .exceptions import ValidationError
from .models import AnimeInfo, UserAnimeEntry, WatchStatus
from .oauth import OAuthSession
from .tracker import RemoteTracker

logger = logging.getLogger(__name__)

ANIME_FIELDS = (
    "id,title,alternative_titles,main_picture,synopsis,mean,status,genres,"
    "media_type,num_episodes,start_season,studios,start_date,end_date"
)

STATUS_MAP = {
    "watching": WatchStatus.WATCHING,
    "completed": WatchStatus.COMPLETED,
    "on_hold": WatchStatus.ON_HOLD,
    "dropped": WatchStatus.DROPPED,
    "plan_to_watch": WatchStatus.PLAN_TO_WATCH,
}


def _parse_date(value: Optional[str]) -> Optional[date]:
    """MAL dates may be partial ("2020" or "2020-04"); only full dates are kept."""
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable MAL timestamp: {value!r}")
        return None


def _describe_item(item) -> str:
    node = item.get("node") if isinstance(item, dict) else None
    if isinstance(node, dict):
        return f"{node.get('id')} ({node.get('title')})"
    return repr(item)[:80]


def _anime_id(external_id: str) -> str:
    value = str(external_id).strip()
    if not value.isdigit():
        raise ValidationError(f"MyAnimeList anime IDs are integers, got {external_id!r}")
    return value


class MALTracker(RemoteTracker):
    """Tracker for the MyAnimeList API v2."""

    BASE_URL = "https://api.myanimelist.net/v2"
    name = TrackerName.MAL.value
    service_name = "MyAnimeList"

    def __init__(self, auth: OAuthSession, request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS):
        """Initialize MAL tracker with an OAuth session."""
        super().__init__(auth=auth, base_url=self.BASE_URL, request_timeout=request_timeout)

    def get_user_anime_list(self, cancel: Optional[CancelToken] = None) -> list[UserAnimeEntry]:
        """Fetch the authenticated user's anime list, following pagination."""
        cancel = cancel or never_cancelled()
        entries = []
        self.rejected_entries = []
        url = f"{self.base_url}/users/@me/animelist"
        params = {
            "fields": f"list_status,{ANIME_FIELDS}",
            "limit": MAL_PAGE_SIZE,
            "offset": 0,
            "nsfw": "true",
        }

        while url:
            cancel.raise_if_cancelled()
            data = self._json(self._request("GET", url, cancel, params=params))

            entries.extend(self._parse_list(data.get("data") or [], self._parse_entry, _describe_item))

            # Pagination
            url = (data.get("paging") or {}).get("next")
            params = None  # Next URL already contains params

        logger.info(f"Fetched {len(entries)} anime entries from MyAnimeList")
        return entries

    def search_anime(
        self, query: str, limit: int = 10, cancel: Optional[CancelToken] = None
    ) -> list[AnimeInfo]:
        """Search MyAnimeList by title."""
        params = {"q": query, "limit": limit, "fields": ANIME_FIELDS}
        data = self._json(self._request("GET", f"{self.base_url}/anime", cancel, params=params))
        return [AnimeInfo(**self._node_fields(item.get("node") or {})) for item in data.get("data") or []]

    def get_anime_details(self, external_id: str, cancel: Optional[CancelToken] = None) -> AnimeInfo:
        url = f"{self.base_url}/anime/{_anime_id(external_id)}"
        data = self._json(self._request("GET", url, cancel, params={"fields": ANIME_FIELDS}))
        return AnimeInfo(**self._node_fields(data))

    def update_anime_status(
        self,
        external_id: str,
        status: WatchStatus,
        episode: float = 0,
        score: float = 0,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        """Update the list status on MyAnimeList; zero episode/score are left unchanged."""
        url = f"{self.base_url}/anime/{_anime_id(external_id)}/my_list_status"
        data = {"status": WatchStatus(status).value}

        if int(episode) > 0:
            data["num_watched_episodes"] = int(episode)
        if score > 0:
            data["score"] = int(round(score))  # MAL expects 0-10 integer

        self._request(
            "PATCH",
            url,
            cancel,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        logger.info(f"Updated MAL entry {external_id}: {data['status']}")

    def _node_fields(self, node: dict) -> dict:
        alt = node.get("alternative_titles") or {}
        # A missing id stays empty so the entry fails external ID validation
        anime_id = "" if node.get("id") is None else str(node["id"])
        title = node.get("title") or anime_id

        alternatives = []
        for name in [alt.get("en"), alt.get("ja"), *(alt.get("synonyms") or [])]:
            if name and name != title and name not in alternatives:
                alternatives.append(name)

        season = node.get("start_season") or {}
        picture = node.get("main_picture") or {}

        return {
            "id": anime_id,
            "title": title,
            "english_title": alt.get("en") or None,
            "japanese_title": alt.get("ja") or None,
            "alternative_titles": alternatives,
            "synopsis": node.get("synopsis"),
            "media_type": node.get("media_type"),
            "airing_status": node.get("status"),
            "episodes": node.get("num_episodes") or None,
            "start_date": _parse_date(node.get("start_date")),
            "end_date": _parse_date(node.get("end_date")),
            "season": season.get("season"),
            "year": season.get("year"),
            "rating": node.get("mean"),
            "genres": [g["name"] for g in node.get("genres") or [] if g.get("name")],
            "studios": [s["name"] for s in node.get("studios") or [] if s.get("name")],
            "image_url": picture.get("large") or picture.get("medium"),
        }

    def _parse_entry(self, item: dict) -> UserAnimeEntry:
        """Parse MAL list item to the common model."""
        list_status = item.get("list_status") or {}

        return UserAnimeEntry(
            **self._node_fields(item.get("node") or {}),
            status=STATUS_MAP.get(list_status.get("status"), WatchStatus.WATCHING),
            score=float(list_status.get("score") or 0),
            progress=list_status.get("num_episodes_watched") or 0,
            started_at=_parse_date(list_status.get("start_date")),
            finished_at=_parse_date(list_status.get("finish_date")),
            last_updated=_parse_timestamp(list_status.get("updated_at")),
            notes=list_status.get("comments") or None,
        )
