"""JSON backup format for the whole local ledger."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

BACKUP_VERSION = 1


class _Row(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ConfigBackup(_Row):
    key: str
    value: str
    updated_at: Optional[datetime] = None


class AnimeBackup(_Row):
    id: int
    title: str
    original_title: Optional[str] = None
    alternative_titles: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    total_episodes: Optional[int] = None
    type: Optional[str] = None
    year: Optional[int] = None
    season: Optional[str] = None
    status: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    thumbnail_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TrackingBackup(_Row):
    id: int
    anime_id: int
    tracker: str
    tracker_id: str = ""
    status: str
    score: float = 0.0
    current_episode: float = 0.0
    total_episodes: Optional[int] = None
    last_updated: datetime


class EpisodeProgressBackup(_Row):
    id: int
    anime_id: int
    episode_number: float
    position: int = 0
    duration: int = 0
    playback_speed: float = 1.0
    watched: bool = False
    source_id: Optional[str] = None
    last_watched: Optional[datetime] = None


class LedgerBackup(BaseModel):
    """Everything needed to rebuild the store: config, anime, tracking and progress rows."""

    version: int = BACKUP_VERSION
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    config: list[ConfigBackup] = Field(default_factory=list)
    anime: list[AnimeBackup] = Field(default_factory=list)
    anime_tracking: list[TrackingBackup] = Field(default_factory=list)
    episode_progress: list[EpisodeProgressBackup] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "config": len(self.config),
            "anime": len(self.anime),
            "anime_tracking": len(self.anime_tracking),
            "episode_progress": len(self.episode_progress),
        }
