"""Exception classes raised by trackers, the store and the sync engine."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import SyncStats


class AnitrackError(Exception):
    """Base class for all anitrack-sync exceptions."""


# Tracker errors
class AuthenticationError(AnitrackError):
    """Missing, expired or unrefreshable tracker credentials."""


class RemoteAPIError(AnitrackError):
    """A remote tracker returned a non-success or malformed response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TrackerNotFoundError(AnitrackError, KeyError):
    """Requested tracker is not registered."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


# Store errors
class LocalStoreError(AnitrackError):
    """A read or write against the local store failed."""


class StoreUnavailableError(LocalStoreError):
    """The local store cannot be reached; no further writes are possible."""


# Input errors
class ValidationError(AnitrackError, ValueError):
    """Input rejected before any network or store call."""


# Sync errors
class OperationCancelledError(AnitrackError):
    """The operation was cancelled or ran past its deadline."""


class SyncError(AnitrackError):
    """A reconciliation pass could not be attempted or had to stop early.

    Carries the stats gathered before the failure so callers never lose them.
    """

    def __init__(
        self,
        message: str,
        stats: Optional["SyncStats"] = None,
        tracker: Optional[str] = None,
    ):
        super().__init__(message)
        self.stats = stats
        self.tracker = tracker


class RegistrySyncError(AnitrackError):
    """One or more trackers failed during a fan-out sync.

    ``stats`` holds the stats of every tracker that was attempted and
    ``failures`` maps tracker names to the exception each one raised.
    """

    def __init__(self, stats: dict, failures: dict[str, Exception]):
        names = ", ".join(sorted(failures))
        super().__init__(f"Sync failed for: {names}")
        self.stats = stats
        self.failures = failures
