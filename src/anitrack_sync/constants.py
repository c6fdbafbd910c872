"""Constants used throughout the application."""

from enum import Enum


class SyncDirection(str, Enum):
    """Direction of a reconciliation pass."""

    PULL = "pull"
    PUSH = "push"
    BOTH = "both"


class TrackerName(str, Enum):
    """Names of the built-in trackers."""

    LOCAL = "local"
    ANILIST = "anilist"
    MAL = "mal"


# Store config keys
ACTIVE_TRACKER_KEY = "active_tracker"
AUTO_SYNC_KEY = "tracker_auto_sync"
SYNC_INTERVAL_KEY = "tracker_sync_interval"
LAST_SYNC_KEY_SUFFIX = "_last_sync"

# HTTP Status Codes
HTTP_OK = 200
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429

# Default values
DEFAULT_SYNC_INTERVAL_MINUTES = 60
MIN_SYNC_INTERVAL_MINUTES = 15  # avoids remote rate limits
SYNC_PASS_TIMEOUT_SECONDS = 300  # 5 minutes
PUSH_ON_DEMAND_TIMEOUT_SECONDS = 30
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_OAUTH_PORT = 18080
TOKEN_EXPIRY_BUFFER_SECONDS = 300  # 5 minutes
MAL_PAGE_SIZE = 100


def last_sync_key(tracker_name: str) -> str:
    """Return the store config key holding a tracker's push watermark."""
    return f"{tracker_name}{LAST_SYNC_KEY_SUFFIX}"
