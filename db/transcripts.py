"""Transcript metadata store.

Records one row per episode describing where its transcript lives and how it
was obtained. Writes are idempotent with respect to the one-active-row-per-
episode rule: a duplicate insert is either skipped or, in re-check mode,
turned into an overwrite of the existing row.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from podbrief.models import TranscriptSource, TranscriptStatus

from .database import utcnow
from .models import Transcript

logger = logging.getLogger(__name__)

# Shared with the notes pipeline, which reads error_details to tell failure
# phases apart.
ERROR_DETAILS_MAX_LENGTH = 260
DOWNLOAD_ERROR = "download_error"
GENERATION_ERROR = "generation_error"
TRANSCRIPT_PARSE_ERROR = "transcript_parse_error"
DATABASE_ERROR = "database_error"

_GENERATION_HINTS = ("deepgram", "transcrib", "generation", "fallback")
_PARSE_HINTS = ("parse", "json", "decode")
_DATABASE_HINTS = ("database", "sqlalchemy", "integrity", "constraint")


class TranscriptNotFoundError(LookupError):
    """No active transcript row exists for an episode."""

    pass


class InsertOutcome(str, Enum):
    """What an insert call did to the table."""

    INSERTED = "inserted"
    SKIPPED = "skipped"
    OVERWRITTEN = "overwritten"


def classify_error(message: str) -> str:
    """Pick the failure-phase tag for an error message."""
    lowered = message.lower()
    if any(hint in lowered for hint in _GENERATION_HINTS):
        return GENERATION_ERROR
    if any(hint in lowered for hint in _PARSE_HINTS):
        return TRANSCRIPT_PARSE_ERROR
    if any(hint in lowered for hint in _DATABASE_HINTS):
        return DATABASE_ERROR
    return DOWNLOAD_ERROR


def format_error_details(message: Optional[str], category: Optional[str] = None) -> Optional[str]:
    """Prefix an error message with its category and bound its length.

    Args:
        message: Raw error message. Empty or None yields None.
        category: download_error or generation_error. Classified from the
            message when omitted.

    Returns:
        "<category>: <message>" no longer than ERROR_DETAILS_MAX_LENGTH.
    """
    if not message:
        return None

    category = category or classify_error(message)
    prefix = f"{category}: "
    if message.startswith(prefix):
        message = message[len(prefix):]

    max_length = ERROR_DETAILS_MAX_LENGTH - len(prefix)
    if len(message) > max_length:
        message = message[: max_length - 3] + "..."
    return f"{prefix}{message}"


def _is_unique_violation(error: IntegrityError) -> bool:
    msg = str(error.orig).lower()
    return "unique" in msg or "duplicate key" in msg


def _value(item) -> Optional[str]:
    if item is None:
        return None
    return item.value if isinstance(item, Enum) else str(item)


class TranscriptMetadataStore:
    """Reads and writes the transcripts table.

    Each call opens its own short-lived session from the factory so callers
    running many episodes at once never share a session.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def insert(
        self,
        episode_id: str,
        storage_path: str,
        status: TranscriptStatus,
        word_count: Optional[int] = None,
        source: Optional[TranscriptSource] = None,
        error_details: Optional[str] = None,
        recheck_mode: bool = False,
    ) -> InsertOutcome:
        """Insert the transcript row for an episode.

        A row that already exists is left alone in normal mode and
        overwritten in re-check mode.

        Args:
            episode_id: Episode the transcript belongs to
            storage_path: Object key of the blob ("" when there is no text)
            status: Initial (and current) status
            word_count: Word count, when known
            source: Provider that produced the result
            error_details: Already formatted error details
            recheck_mode: Overwrite an existing active row instead of skipping

        Returns:
            The InsertOutcome describing what happened.
        """
        row = Transcript(
            episode_id=episode_id,
            storage_path=storage_path or "",
            initial_status=_value(status),
            current_status=_value(status),
            word_count=word_count,
            source=_value(source),
            error_details=error_details,
        )

        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if not _is_unique_violation(e):
                raise

            if not recheck_mode:
                logger.debug(
                    f"Transcript already exists for episode {episode_id} - skipping (idempotent)"
                )
                return InsertOutcome.SKIPPED

            self.overwrite(
                episode_id,
                storage_path,
                status,
                word_count=word_count,
                source=source,
                error_details=error_details if _value(status) == TranscriptStatus.ERROR.value else None,
            )
            return InsertOutcome.OVERWRITTEN
        finally:
            db.close()

        logger.debug(
            f"Transcript recorded for episode {episode_id}: status={_value(status)}, "
            f"path={storage_path or '-'}, words={word_count}"
        )
        return InsertOutcome.INSERTED

    def overwrite(
        self,
        episode_id: str,
        storage_path: str,
        status: TranscriptStatus,
        word_count: Optional[int] = None,
        source: Optional[TranscriptSource] = None,
        error_details: Optional[str] = None,
    ) -> Transcript:
        """Replace status, path, word count and source of the active row.

        Used by re-check mode. created_at is kept; error_details is replaced
        (None clears it).

        Raises:
            TranscriptNotFoundError: If the episode has no active row.
        """
        db = self.session_factory()
        try:
            row = (
                db.query(Transcript)
                .filter(Transcript.episode_id == episode_id, Transcript.deleted_at.is_(None))
                .first()
            )
            if row is None:
                raise TranscriptNotFoundError(f"No transcript found for episode_id: {episode_id}")

            row.storage_path = storage_path or ""
            row.initial_status = _value(status)
            row.current_status = _value(status)
            row.word_count = word_count
            if source is not None:
                row.source = _value(source)
            row.error_details = error_details
            row.updated_at = utcnow()
            db.commit()

            logger.debug(f"Transcript overwritten for episode {episode_id}: status={_value(status)}")
            return row
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update(
        self,
        episode_id: str,
        storage_path: str,
        current_status: TranscriptStatus,
        word_count: Optional[int],
        source: TranscriptSource,
        error_details: Optional[str],
    ) -> None:
        """Update the active row in place (fallback path).

        initial_status is left untouched so the row still shows what the
        primary provider reported.

        Raises:
            TranscriptNotFoundError: If there is no active row to update.
        """
        db = self.session_factory()
        try:
            updated = (
                db.query(Transcript)
                .filter(Transcript.episode_id == episode_id, Transcript.deleted_at.is_(None))
                .update(
                    {
                        Transcript.storage_path: storage_path or "",
                        Transcript.current_status: _value(current_status),
                        Transcript.word_count: word_count,
                        Transcript.source: _value(source),
                        Transcript.error_details: error_details,
                        Transcript.updated_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to update transcript record for episode {episode_id}: {e}")
            raise
        finally:
            db.close()

        if updated == 0:
            logger.error(f"No transcript row to update for episode {episode_id}")
            raise TranscriptNotFoundError(f"No transcript found for episode_id: {episode_id}")

        logger.debug(
            f"Transcript record updated for episode {episode_id}: "
            f"status={_value(current_status)}, source={_value(source)}"
        )

    def soft_delete(self, episode_id: str) -> bool:
        """Mark the active row deleted. Returns False when there was none."""
        db = self.session_factory()
        try:
            updated = (
                db.query(Transcript)
                .filter(Transcript.episode_id == episode_id, Transcript.deleted_at.is_(None))
                .update({Transcript.deleted_at: utcnow()}, synchronize_session=False)
            )
            db.commit()
            return updated > 0
        finally:
            db.close()

    def get_active(self, episode_id: str) -> Optional[Transcript]:
        """Get the active transcript row for an episode, if any."""
        db = self.session_factory()
        try:
            return (
                db.query(Transcript)
                .filter(Transcript.episode_id == episode_id, Transcript.deleted_at.is_(None))
                .first()
            )
        finally:
            db.close()

    def active_episode_ids(self, episode_ids: Iterable[str]) -> set[str]:
        """Return the subset of episode_ids that have an active transcript."""
        ids = list(episode_ids)
        if not ids:
            return set()

        db = self.session_factory()
        try:
            rows = (
                db.query(Transcript.episode_id)
                .filter(Transcript.episode_id.in_(ids), Transcript.deleted_at.is_(None))
                .all()
            )
            return {episode_id for (episode_id,) in rows}
        finally:
            db.close()

    def status_counts(self, include_deleted: bool = False) -> dict[str, int]:
        """Count transcripts by current status."""
        counts = {status.value: 0 for status in TranscriptStatus}

        db = self.session_factory()
        try:
            query = db.query(Transcript.current_status, func.count(Transcript.id))
            if not include_deleted:
                query = query.filter(Transcript.deleted_at.is_(None))
            for status, count in query.group_by(Transcript.current_status).all():
                counts[status] = count
            return counts
        finally:
            db.close()
