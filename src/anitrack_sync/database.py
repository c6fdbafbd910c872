"""SQLAlchemy models for the local tracking store."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

__all__ = [
    "AnimeRecord",
    "Base",
    "ConfigEntry",
    "EpisodeProgress",
    "TrackingRecord",
    "UTCDateTime",
    "utcnow",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Datetime column that always round-trips as aware UTC.

    SQLite has no timezone support, so values are stored naive in UTC and
    tagged with UTC again when loaded.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class ConfigEntry(Base):
    """Key/value configuration row."""

    __tablename__ = "config"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class AnimeRecord(Base):
    """Canonical local representation of a title, independent of any tracker."""

    __tablename__ = "anime"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False, index=True)
    original_title: Mapped[Optional[str]] = mapped_column(String)
    alternative_titles: Mapped[list[str]] = mapped_column(JSON, default=list)
    description: Mapped[Optional[str]] = mapped_column(Text)
    total_episodes: Mapped[Optional[int]] = mapped_column(Integer)
    type: Mapped[Optional[str]] = mapped_column(String)  # TV, Movie, OVA, ...
    year: Mapped[Optional[int]] = mapped_column(Integer)
    season: Mapped[Optional[str]] = mapped_column(String)
    status: Mapped[Optional[str]] = mapped_column(String)  # airing status
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    trackings: Mapped[list["TrackingRecord"]] = relationship(
        back_populates="anime", cascade="all, delete-orphan", passive_deletes=True
    )
    progress: Mapped[list["EpisodeProgress"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<AnimeRecord id={self.id} title={self.title!r}>"


class TrackingRecord(Base):
    """Per-tracker watch status of an anime."""

    __tablename__ = "anime_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    anime_id: Mapped[int] = mapped_column(
        ForeignKey("anime.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tracker: Mapped[str] = mapped_column(String, nullable=False)
    tracker_id: Mapped[str] = mapped_column(String, default="")  # external ID
    status: Mapped[str] = mapped_column(String, nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    current_episode: Mapped[float] = mapped_column(Float, default=0.0)  # allows 12.5
    total_episodes: Mapped[Optional[int]] = mapped_column(Integer)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    anime: Mapped[AnimeRecord] = relationship(back_populates="trackings")

    __table_args__ = (
        UniqueConstraint("anime_id", "tracker", name="uq_tracking_anime_tracker"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrackingRecord anime_id={self.anime_id} tracker={self.tracker!r} "
            f"tracker_id={self.tracker_id!r} episode={self.current_episode}>"
        )


class EpisodeProgress(Base):
    """Playback position for one episode of an anime."""

    __tablename__ = "episode_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    anime_id: Mapped[int] = mapped_column(
        ForeignKey("anime.id", ondelete="CASCADE"), nullable=False, index=True
    )
    episode_number: Mapped[float] = mapped_column(Float, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)  # seconds
    duration: Mapped[int] = mapped_column(Integer, default=0)  # seconds
    playback_speed: Mapped[float] = mapped_column(Float, default=1.0)
    watched: Mapped[bool] = mapped_column(Boolean, default=False)
    source_id: Mapped[Optional[str]] = mapped_column(String)
    last_watched: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("anime_id", "episode_number", name="uq_progress_anime_episode"),
    )
