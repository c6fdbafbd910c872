"""Data models for anime entries and sync results."""

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import ValidationError


class WatchStatus(str, Enum):
    """Anime watch status."""

    WATCHING = "watching"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    DROPPED = "dropped"
    PLAN_TO_WATCH = "plan_to_watch"

    @classmethod
    def parse(cls, value: str) -> "WatchStatus":
        """Parse a stored status string, rejecting unknown values."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown watch status: {value!r}") from None


_EXTERNAL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")


def validate_external_id(value) -> str:
    """Return value as a clean external ID or raise ValidationError."""
    if value is None:
        raise ValidationError("Missing external ID")
    external_id = str(value).strip()
    if not external_id:
        raise ValidationError("Missing external ID")
    if not _EXTERNAL_ID_RE.match(external_id):
        raise ValidationError(f"Malformed external ID: {external_id!r}")
    return external_id


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AnimeInfo(BaseModel):
    """Anime metadata as reported by a tracker."""

    # Identifiers
    id: str
    title: str

    # Titles
    english_title: Optional[str] = None
    japanese_title: Optional[str] = None
    alternative_titles: list[str] = Field(default_factory=list)

    # Metadata
    synopsis: Optional[str] = None
    media_type: Optional[str] = None
    airing_status: Optional[str] = None
    episodes: Optional[int] = Field(default=None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    season: Optional[str] = None
    year: Optional[int] = None
    rating: Optional[float] = None
    genres: list[str] = Field(default_factory=list)
    studios: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None


class UserAnimeEntry(AnimeInfo):
    """An entry on a user's list: anime metadata plus watch data."""

    # Watch data
    status: WatchStatus
    score: float = Field(default=0, ge=0, le=10)
    progress: float = Field(default=0, ge=0)

    # Dates
    started_at: Optional[date] = None
    finished_at: Optional[date] = None
    last_updated: Optional[datetime] = None

    notes: Optional[str] = None

    @field_validator("last_updated")
    @classmethod
    def normalize_last_updated(cls, v):
        """Store timestamps as aware UTC so they compare with the local store."""
        return ensure_utc(v)


class SyncStats(BaseModel):
    """Outcome counters and detail lines for one reconciliation pass."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[str] = Field(default_factory=list)

    def record_added(self, detail: str) -> None:
        self.added += 1
        self.details.append(detail)

    def record_updated(self, detail: str) -> None:
        self.updated += 1
        self.details.append(detail)

    def record_deleted(self, detail: str) -> None:
        self.deleted += 1
        self.details.append(detail)

    def record_skipped(self, detail: Optional[str] = None) -> None:
        self.skipped += 1
        if detail:
            self.details.append(detail)

    def record_error(self, detail: str) -> None:
        self.errors += 1
        self.details.append(detail)

    def merge(self, other: "SyncStats") -> "SyncStats":
        """Return a new SyncStats combining this one with other."""
        return SyncStats(
            added=self.added + other.added,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            details=[*self.details, *other.details],
        )

    @property
    def changed(self) -> int:
        """Number of items that caused a mutation on either side."""
        return self.added + self.updated + self.deleted

    def summary(self) -> str:
        """One-line summary for logs."""
        return (
            f"added={self.added}, updated={self.updated}, deleted={self.deleted}, "
            f"skipped={self.skipped}, errors={self.errors}"
        )
