"""Candidate selection for the transcript worker."""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from podbrief.models import EpisodeWithShow

from .database import utcnow
from .models import Episode, Show
from .transcripts import TranscriptMetadataStore

logger = logging.getLogger(__name__)


class SelectionError(RuntimeError):
    """The candidate query failed; the run cannot continue."""

    pass


class EpisodeCutoffSelector:
    """Finds recent episodes that still need a transcript."""

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        """Initialize the selector.

        Args:
            session_factory: SQLAlchemy session factory
            clock: Returns the current naive UTC time (overridable in tests)
        """
        self.session_factory = session_factory
        self.clock = clock
        self.transcripts = TranscriptMetadataStore(session_factory)

    def select(
        self,
        lookback_hours: int,
        max_candidates: int,
        recheck_mode: bool = False,
        recheck_count: int = 10,
    ) -> list[EpisodeWithShow]:
        """Select episodes needing transcripts, most recent first.

        Args:
            lookback_hours: Only episodes published in the last N hours
            max_candidates: Episodes the caller intends to process
            recheck_mode: Include episodes that already have a transcript
            recheck_count: In re-check mode, keep only this many episodes

        Returns:
            Episodes with their show reference attached.

        Raises:
            SelectionError: If any query fails.
        """
        start_time = time.time()
        now = self.clock()
        cutoff = now - timedelta(hours=lookback_hours)

        db = self.session_factory()
        try:
            pairs = self._query_candidates(db, cutoff, now, max_candidates * 2)

            if not pairs:
                logger.warning(
                    f"Primary episode query returned no rows for the last {lookback_hours}h; "
                    "trying widened query"
                )
                pairs = [(episode, None) for episode in self._query_widened(db, cutoff, now)]

            if not pairs:
                logger.info(f"No episodes published in the last {lookback_hours}h")
                return []

            episode_ids = [episode.id for episode, _ in pairs]
            with_transcripts = self.transcripts.active_episode_ids(episode_ids)

            if recheck_mode:
                # Existing transcripts are reprocessed; keep the newest rows only
                selected = sorted(
                    pairs,
                    key=lambda pair: pair[0].created_at or datetime.min,
                    reverse=True,
                )[:recheck_count]
            else:
                selected = [pair for pair in pairs if pair[0].id not in with_transcripts]

            shows = self._resolve_missing_shows(db, selected)
            jobs = [episode.to_job(show or shows.get(episode.show_id)) for episode, show in selected]
        except SQLAlchemyError as e:
            logger.error(f"Failed to query episodes needing transcripts: {e}")
            raise SelectionError(f"Failed to query episodes: {e}") from e
        finally:
            db.close()

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Episode selection complete: {len(pairs)} in window, "
            f"{len(with_transcripts)} with transcripts, {len(jobs)} selected "
            f"({elapsed_ms}ms, lookback={lookback_hours}h, recheck={recheck_mode})"
        )
        return jobs

    def _query_candidates(
        self, db: Session, cutoff: datetime, now: datetime, limit: int
    ) -> list[tuple[Episode, Optional[Show]]]:
        """Episodes in the window whose show has a feed URL and which have a GUID."""
        rows = (
            db.query(Episode, Show)
            .join(Show, Episode.show_id == Show.id)
            .filter(
                Episode.pub_date >= cutoff,
                Episode.pub_date <= now,
                Show.rss_url.isnot(None),
                Show.rss_url != "",
                Episode.guid.isnot(None),
                Episode.guid != "",
            )
            .order_by(Episode.pub_date.desc())
            .limit(limit)
            .all()
        )
        return [(episode, show) for episode, show in rows]

    def _query_widened(self, db: Session, cutoff: datetime, now: datetime) -> list[Episode]:
        """Fallback when the joined query finds nothing.

        First drops the join filters, then filters the whole table in Python.
        """
        episodes = (
            db.query(Episode)
            .filter(Episode.pub_date >= cutoff, Episode.pub_date <= now)
            .order_by(Episode.pub_date.desc())
            .all()
        )
        if episodes:
            return episodes

        in_window = [
            episode
            for episode in db.query(Episode).all()
            if episode.pub_date is not None and cutoff <= episode.pub_date <= now
        ]
        return sorted(in_window, key=lambda episode: episode.pub_date, reverse=True)

    def _resolve_missing_shows(
        self, db: Session, pairs: list[tuple[Episode, Optional[Show]]]
    ) -> dict[str, Show]:
        """Load show rows for episodes that came back without one."""
        show_ids = {episode.show_id for episode, show in pairs if show is None}
        if not show_ids:
            return {}
        return {show.id: show for show in db.query(Show).filter(Show.id.in_(show_ids)).all()}
