"""SQLAlchemy models for shows, episodes and transcripts."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from podbrief.models import EpisodeWithShow, ShowReference, TranscriptSource, TranscriptStatus

from .database import Base, utcnow


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in TranscriptStatus)
_SOURCE_VALUES = ", ".join(f"'{s.value}'" for s in TranscriptSource)


class Show(Base):
    """A podcast show. Written by the subscription sync."""

    __tablename__ = "podcast_shows"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    rss_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    episodes: Mapped[list["Episode"]] = relationship(
        "Episode", back_populates="show", cascade="all, delete-orphan"
    )

    def to_reference(self) -> ShowReference:
        return ShowReference(id=self.id, rss_url=self.rss_url, title=self.title)


class Episode(Base):
    """An episode of a show. Written by the episode sync, read-only here."""

    __tablename__ = "podcast_episodes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    show_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("podcast_shows.id"), nullable=False
    )
    guid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    episode_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # audio enclosure
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pub_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_sec: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    show: Mapped["Show"] = relationship("Show", back_populates="episodes")

    def to_job(self, show: Optional[Show] = None) -> EpisodeWithShow:
        """Detach the row into the model the worker passes around."""
        return EpisodeWithShow(
            id=self.id,
            show_id=self.show_id,
            guid=self.guid,
            episode_url=self.episode_url,
            title=self.title,
            description=self.description,
            pub_date=_isoformat(self.pub_date),
            duration_sec=self.duration_sec,
            created_at=_isoformat(self.created_at),
            show=show.to_reference() if show is not None else None,
        )


class Transcript(Base):
    """Metadata for a transcript stored in object storage.

    Soft delete: set deleted_at instead of deleting the row. Queries filter
    on ``deleted_at IS NULL``; only one active row may exist per episode.
    """

    __tablename__ = "transcripts"
    __table_args__ = (
        Index(
            "uq_transcripts_active_episode",
            "episode_id",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        CheckConstraint(
            f"initial_status IN ({_STATUS_VALUES})",
            name="ck_transcripts_initial_status",
        ),
        CheckConstraint(
            f"current_status IN ({_STATUS_VALUES})",
            name="ck_transcripts_current_status",
        ),
        CheckConstraint(
            f"source IS NULL OR source IN ({_SOURCE_VALUES})",
            name="ck_transcripts_source",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("podcast_episodes.id", ondelete="CASCADE"), nullable=False
    )
    storage_path: Mapped[str] = mapped_column(Text, nullable=False, default="")
    initial_status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_status: Mapped[str] = mapped_column(String(32), nullable=False)
    word_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(String(260), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    episode: Mapped["Episode"] = relationship("Episode")

    @property
    def source_kind(self) -> Optional[str]:
        """'fallback' for rows written by the fallback transcriber, else 'primary'."""
        if self.source is None:
            return None
        return "fallback" if TranscriptSource(self.source).is_fallback else "primary"


class WorkerLock(Base):
    """Row-based advisory lock for databases without native advisory locks."""

    __tablename__ = "worker_locks"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
