"""The tracker capability shared by the local ledger and remote services."""

import logging
from typing import Callable, Iterable, Optional, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from .base_client import BaseAPIClient
from .cancellation import CancelToken
from .models import AnimeInfo, SyncStats, UserAnimeEntry, WatchStatus
from .reconcile import pull_from_remote, push_to_remote
from .store import TrackingStore

logger = logging.getLogger(__name__)

# Raised by a single list item whose payload doesn't fit the entry model
ENTRY_PARSE_ERRORS = (PydanticValidationError, KeyError, TypeError, ValueError)


@runtime_checkable
class Tracker(Protocol):
    """A replica of the user's anime list that can be searched, read and updated.

    ``episode`` and ``score`` values of 0 passed to ``update_anime_status``
    mean "leave unchanged", never "reset".
    """

    name: str

    def is_authenticated(self) -> bool: ...

    def authenticate(self, cancel: Optional[CancelToken] = None) -> None: ...

    def search_anime(
        self, query: str, limit: int = 10, cancel: Optional[CancelToken] = None
    ) -> list[AnimeInfo]: ...

    def get_anime_details(self, external_id: str, cancel: Optional[CancelToken] = None) -> AnimeInfo: ...

    def get_user_anime_list(self, cancel: Optional[CancelToken] = None) -> list[UserAnimeEntry]: ...

    def update_anime_status(
        self,
        external_id: str,
        status: WatchStatus,
        episode: float = 0,
        score: float = 0,
        cancel: Optional[CancelToken] = None,
    ) -> None: ...

    def sync_from_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats: ...

    def sync_to_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats: ...


class RemoteTracker(BaseAPIClient):
    """Authentication and reconciliation plumbing common to remote services.

    Subclasses set ``name`` and implement the list/search/update calls. List
    items that cannot be parsed are dropped from the returned list and their
    descriptions kept in ``rejected_entries`` until the next list fetch, so a
    pull can count them as errors.
    """

    name = ""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.rejected_entries: list[str] = []

    def _parse_list(
        self,
        items: Iterable[dict],
        parse: Callable[[dict], UserAnimeEntry],
        describe: Callable[[dict], str],
    ) -> list[UserAnimeEntry]:
        """Parse list items one by one, setting aside the malformed ones."""
        entries = []
        for item in items:
            try:
                entries.append(parse(item))
            except ENTRY_PARSE_ERRORS as e:
                message = f"Malformed {self.service_name} list entry {describe(item)}: {e}"
                logger.warning(message)
                self.rejected_entries.append(message)
        return entries

    def is_authenticated(self) -> bool:
        return self.auth.is_authenticated()

    def authenticate(self, cancel: Optional[CancelToken] = None) -> None:
        self.auth.authenticate(cancel)

    def sync_from_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats:
        return pull_from_remote(self, store, cancel)

    def sync_to_remote(self, store: TrackingStore, cancel: Optional[CancelToken] = None) -> SyncStats:
        return push_to_remote(self, store, cancel)
