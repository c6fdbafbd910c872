"""Local tracking store backed by SQLite."""

import logging
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import String, cast, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .backup import (
    BACKUP_VERSION,
    AnimeBackup,
    ConfigBackup,
    EpisodeProgressBackup,
    LedgerBackup,
    TrackingBackup,
)
from .database import AnimeRecord, Base, ConfigEntry, EpisodeProgress, TrackingRecord, utcnow
from .exceptions import LocalStoreError, StoreUnavailableError, ValidationError

logger = logging.getLogger(__name__)


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    """Turn on SQLite FK enforcement so ON DELETE CASCADE applies."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class TrackingStore:
    """CRUD and upsert operations over anime, tracking, progress and config rows.

    Every public method runs in its own transaction, so a call either lands
    completely or not at all. Writes are serialized with a lock since SQLite
    only supports one writer at a time. Returned ORM objects are detached;
    modify them and hand them back to the matching ``update_*`` method.
    """

    def __init__(self, db_path: Union[Path, str], engine: Optional[Engine] = None):
        """Open (and create if needed) the database at db_path."""
        self.db_path = Path(db_path)
        self.engine = engine or self._create_engine()
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._write_lock = threading.RLock()

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to initialize database at {self.db_path}: {e}") from e
        logger.debug(f"Opened tracking store at {self.db_path}")

    def _create_engine(self) -> Engine:
        if self.db_path.exists() and self.db_path.is_dir():
            raise StoreUnavailableError(f"Database path '{self.db_path}' is a directory")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(f"sqlite:///{self.db_path}")
        event.listen(engine, "connect", _enable_foreign_keys)
        return engine

    def close(self) -> None:
        """Release all pooled connections."""
        self.engine.dispose()

    @contextmanager
    def _session(self, write: bool = False) -> Iterator[Session]:
        """Open a session in a transaction, translating database errors."""
        lock = self._write_lock if write else nullcontext()
        with lock:
            try:
                with self._sessions.begin() as session:
                    yield session
            except OperationalError as e:
                raise StoreUnavailableError(f"Database unavailable: {e}") from e
            except SQLAlchemyError as e:
                raise LocalStoreError(f"Database error: {e}") from e

    # Config

    def get_config(self, key: str) -> Optional[str]:
        """Return a config value, or None when it is not set."""
        with self._session() as session:
            entry = session.get(ConfigEntry, key)
            return entry.value if entry else None

    def set_config(self, key: str, value: str) -> None:
        with self._session(write=True) as session:
            entry = session.get(ConfigEntry, key)
            if entry is None:
                session.add(ConfigEntry(key=key, value=value))
            else:
                entry.value = value

    def delete_config(self, key: str) -> None:
        with self._session(write=True) as session:
            entry = session.get(ConfigEntry, key)
            if entry is not None:
                session.delete(entry)

    def get_all_config(self) -> dict[str, str]:
        with self._session() as session:
            return {e.key: e.value for e in session.scalars(select(ConfigEntry))}

    # Anime

    def add_anime(self, anime: AnimeRecord) -> AnimeRecord:
        with self._session(write=True) as session:
            session.add(anime)
            session.flush()
            return anime

    def get_anime(self, anime_id: int) -> Optional[AnimeRecord]:
        with self._session() as session:
            return session.get(AnimeRecord, anime_id)

    def get_all_anime(self) -> list[AnimeRecord]:
        with self._session() as session:
            return list(session.scalars(select(AnimeRecord).order_by(AnimeRecord.title)))

    def update_anime(self, anime: AnimeRecord) -> AnimeRecord:
        if anime.id is None:
            raise ValidationError("Cannot update an anime that has not been added")
        with self._session(write=True) as session:
            return session.merge(anime)

    def delete_anime(self, anime_id: int) -> None:
        """Delete an anime together with its tracking and progress rows."""
        with self._session(write=True) as session:
            anime = session.get(AnimeRecord, anime_id)
            if anime is not None:
                session.delete(anime)

    def search_anime(self, query: str, limit: Optional[int] = None) -> list[AnimeRecord]:
        """Find anime whose title or alternative titles contain query."""
        pattern = f"%{query}%"
        stmt = (
            select(AnimeRecord)
            .where(
                or_(
                    AnimeRecord.title.ilike(pattern),
                    AnimeRecord.original_title.ilike(pattern),
                    cast(AnimeRecord.alternative_titles, String).ilike(pattern),
                )
            )
            .order_by(AnimeRecord.title)
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return list(session.scalars(stmt))

    def get_anime_by_external_id(self, external_id: str, tracker: str) -> Optional[AnimeRecord]:
        """Resolve an anime through the tracking row of tracker with external_id."""
        stmt = (
            select(AnimeRecord)
            .join(TrackingRecord, TrackingRecord.anime_id == AnimeRecord.id)
            .where(TrackingRecord.tracker == tracker, TrackingRecord.tracker_id == external_id)
        )
        with self._session() as session:
            return session.scalars(stmt).first()

    # Tracking

    def add_tracking(self, tracking: TrackingRecord) -> TrackingRecord:
        with self._session(write=True) as session:
            session.add(tracking)
            session.flush()
            return tracking

    def get_tracking(self, anime_id: int, tracker: str) -> Optional[TrackingRecord]:
        stmt = select(TrackingRecord).where(
            TrackingRecord.anime_id == anime_id, TrackingRecord.tracker == tracker
        )
        with self._session() as session:
            return session.scalars(stmt).first()

    def get_tracking_by_external_id(self, external_id: str, tracker: str) -> Optional[TrackingRecord]:
        stmt = select(TrackingRecord).where(
            TrackingRecord.tracker_id == external_id, TrackingRecord.tracker == tracker
        )
        with self._session() as session:
            return session.scalars(stmt).first()

    def list_trackings_for_tracker(self, tracker: str) -> list[TrackingRecord]:
        stmt = select(TrackingRecord).where(TrackingRecord.tracker == tracker).order_by(TrackingRecord.id)
        with self._session() as session:
            return list(session.scalars(stmt))

    def list_trackings_for_anime(self, anime_id: int) -> list[TrackingRecord]:
        stmt = select(TrackingRecord).where(TrackingRecord.anime_id == anime_id).order_by(TrackingRecord.id)
        with self._session() as session:
            return list(session.scalars(stmt))

    def count_trackings(self, anime_id: int) -> int:
        stmt = select(func.count()).select_from(TrackingRecord).where(TrackingRecord.anime_id == anime_id)
        with self._session() as session:
            return session.scalar(stmt) or 0

    def update_tracking(self, tracking: TrackingRecord) -> TrackingRecord:
        if tracking.id is None:
            raise ValidationError("Cannot update a tracking row that has not been added")
        with self._session(write=True) as session:
            return session.merge(tracking)

    def update_tracking_progress(self, anime_id: int, tracker: str, episode: float) -> bool:
        """Set the current episode of one tracking row and stamp it as updated now."""
        with self._session(write=True) as session:
            tracking = session.scalars(
                select(TrackingRecord).where(
                    TrackingRecord.anime_id == anime_id, TrackingRecord.tracker == tracker
                )
            ).first()
            if tracking is None:
                return False
            tracking.current_episode = episode
            tracking.last_updated = utcnow()
            return True

    def upsert_tracking(self, anime_id: int, tracker: str, **fields: Any) -> TrackingRecord:
        """Create the (anime_id, tracker) row or overwrite the given fields on it."""
        with self._session(write=True) as session:
            tracking = session.scalars(
                select(TrackingRecord).where(
                    TrackingRecord.anime_id == anime_id, TrackingRecord.tracker == tracker
                )
            ).first()
            if tracking is None:
                tracking = TrackingRecord(anime_id=anime_id, tracker=tracker)
                session.add(tracking)
            for name, value in fields.items():
                setattr(tracking, name, value)
            session.flush()
            return tracking

    def delete_tracking(self, anime_id: int, tracker: str) -> bool:
        """Delete one tracking row; drop the anime too if nothing tracks it anymore.

        Returns True when the anime was deleted as well.
        """
        with self._session(write=True) as session:
            tracking = session.scalars(
                select(TrackingRecord).where(
                    TrackingRecord.anime_id == anime_id, TrackingRecord.tracker == tracker
                )
            ).first()
            if tracking is None:
                return False
            session.delete(tracking)
            session.flush()
            return self._delete_orphan(session, anime_id)

    @staticmethod
    def _delete_orphan(session: Session, anime_id: int) -> bool:
        remaining = session.scalar(
            select(func.count()).select_from(TrackingRecord).where(TrackingRecord.anime_id == anime_id)
        )
        if remaining:
            return False
        anime = session.get(AnimeRecord, anime_id)
        if anime is None:
            return False
        session.delete(anime)
        return True

    # Atomic reconciliation writes

    def create_anime_with_tracking(
        self, anime: AnimeRecord, tracking: TrackingRecord
    ) -> tuple[AnimeRecord, TrackingRecord]:
        """Insert a new anime and its first tracking row in one transaction."""
        with self._session(write=True) as session:
            session.add(anime)
            session.flush()
            tracking.anime_id = anime.id
            session.add(tracking)
            session.flush()
            return anime, tracking

    def apply_tracking_update(
        self,
        tracking_id: int,
        tracking_fields: dict[str, Any],
        anime_fields: Optional[dict[str, Any]] = None,
    ) -> TrackingRecord:
        """Overwrite a tracking row (and optionally its anime metadata) atomically."""
        with self._session(write=True) as session:
            tracking = session.get(TrackingRecord, tracking_id)
            if tracking is None:
                raise LocalStoreError(f"Tracking row {tracking_id} no longer exists")
            for name, value in tracking_fields.items():
                setattr(tracking, name, value)
            if anime_fields:
                anime = session.get(AnimeRecord, tracking.anime_id)
                if anime is not None:
                    for name, value in anime_fields.items():
                        if value is not None:
                            setattr(anime, name, value)
            session.flush()
            return tracking

    # Episode progress

    def save_episode_progress(self, progress: EpisodeProgress) -> EpisodeProgress:
        """Insert or replace the progress row for (anime_id, episode_number)."""
        with self._session(write=True) as session:
            existing = session.scalars(
                select(EpisodeProgress).where(
                    EpisodeProgress.anime_id == progress.anime_id,
                    EpisodeProgress.episode_number == progress.episode_number,
                )
            ).first()
            if existing is None:
                session.add(progress)
                session.flush()
                return progress
            existing.position = progress.position
            existing.duration = progress.duration
            existing.playback_speed = progress.playback_speed or 1.0
            existing.watched = bool(progress.watched)
            existing.source_id = progress.source_id
            existing.last_watched = progress.last_watched or utcnow()
            session.flush()
            return existing

    def get_episode_progress(self, anime_id: int, episode_number: float) -> Optional[EpisodeProgress]:
        stmt = select(EpisodeProgress).where(
            EpisodeProgress.anime_id == anime_id, EpisodeProgress.episode_number == episode_number
        )
        with self._session() as session:
            return session.scalars(stmt).first()

    def list_episode_progress(self, anime_id: int) -> list[EpisodeProgress]:
        stmt = (
            select(EpisodeProgress)
            .where(EpisodeProgress.anime_id == anime_id)
            .order_by(EpisodeProgress.episode_number)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def delete_episode_progress(self, anime_id: int, episode_number: float) -> None:
        with self._session(write=True) as session:
            progress = session.scalars(
                select(EpisodeProgress).where(
                    EpisodeProgress.anime_id == anime_id,
                    EpisodeProgress.episode_number == episode_number,
                )
            ).first()
            if progress is not None:
                session.delete(progress)

    # Views

    def get_recently_watched(self, limit: int = 10) -> list[AnimeRecord]:
        """Anime ordered by the most recent episode playback."""
        stmt = (
            select(AnimeRecord)
            .join(EpisodeProgress, EpisodeProgress.anime_id == AnimeRecord.id)
            .group_by(AnimeRecord.id)
            .order_by(func.max(EpisodeProgress.last_watched).desc())
            .limit(limit)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def get_currently_watching(self, tracker: Optional[str] = None) -> list[AnimeRecord]:
        """Anime with a 'watching' tracking row, most recently updated first."""
        stmt = (
            select(AnimeRecord)
            .join(TrackingRecord, TrackingRecord.anime_id == AnimeRecord.id)
            .where(TrackingRecord.status == "watching")
        )
        if tracker:
            stmt = stmt.where(TrackingRecord.tracker == tracker)
        stmt = stmt.group_by(AnimeRecord.id).order_by(func.max(TrackingRecord.last_updated).desc())
        with self._session() as session:
            return list(session.scalars(stmt))


    # Backup

    def export_backup(self) -> LedgerBackup:
        """Snapshot every config, anime, tracking and progress row."""
        with self._session() as session:
            return LedgerBackup(
                config=[ConfigBackup.model_validate(row) for row in session.scalars(select(ConfigEntry))],
                anime=[AnimeBackup.model_validate(row) for row in session.scalars(select(AnimeRecord))],
                anime_tracking=[
                    TrackingBackup.model_validate(row) for row in session.scalars(select(TrackingRecord))
                ],
                episode_progress=[
                    EpisodeProgressBackup.model_validate(row) for row in session.scalars(select(EpisodeProgress))
                ],
            )

    def export_json(self, path: Union[Path, str]) -> LedgerBackup:
        """Write the whole ledger to a JSON file, creating its directory."""
        backup = self.export_backup()
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(backup.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise LocalStoreError(f"Failed to write backup {path}: {e}") from e
        logger.info(f"Exported ledger to {path}: {backup.counts()}")
        return backup

    def import_backup(self, backup: LedgerBackup) -> None:
        """Insert or replace every row of backup by primary key, in one transaction."""
        if backup.version > BACKUP_VERSION:
            raise ValidationError(f"Unsupported backup version {backup.version}")

        with self._session(write=True) as session:
            for row in backup.config:
                session.merge(ConfigEntry(**_row_fields(row)))
            for row in backup.anime:
                session.merge(AnimeRecord(**_row_fields(row)))
            session.flush()
            for row in backup.anime_tracking:
                session.merge(TrackingRecord(**_row_fields(row)))
            for row in backup.episode_progress:
                session.merge(EpisodeProgress(**_row_fields(row)))

    def import_json(self, path: Union[Path, str]) -> LedgerBackup:
        """Restore rows from a file written by export_json."""
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise LocalStoreError(f"Failed to read backup {path}: {e}") from e
        try:
            backup = LedgerBackup.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid backup file {path}: {e}") from e

        self.import_backup(backup)
        logger.info(f"Imported ledger from {path}: {backup.counts()}")
        return backup


def _row_fields(row) -> dict[str, Any]:
    # Missing timestamps fall back to the column defaults instead of NULL
    return {k: v for k, v in row.model_dump().items() if not (v is None and k in _TIMESTAMP_FIELDS)}


_TIMESTAMP_FIELDS = {"created_at", "updated_at", "last_updated", "last_watched"}
