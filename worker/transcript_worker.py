"""Nightly transcript worker.

One run takes the advisory lock, selects recent episodes without a
transcript, asks the primary provider for each of them in fixed-size batches,
escalates failures to the paid fallback transcriber within a per-run budget,
and records the outcome of every episode.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from typing_extensions import assert_never

from db.lock import TRANSCRIPT_WORKER_LOCK_KEY, create_advisory_lock
from db.selector import EpisodeCutoffSelector
from db.transcripts import (
    DOWNLOAD_ERROR,
    GENERATION_ERROR,
    TranscriptMetadataStore,
    format_error_details,
)
from podbrief.config import Config, ConfigError, FallbackConfig, WorkerConfig
from podbrief.models import (
    EpisodeWithShow,
    FullTranscript,
    PartialTranscript,
    ProcessingResult,
    ProcessingTranscript,
    TranscriptError,
    TranscriptNoMatch,
    TranscriptNotFound,
    TranscriptResult,
    TranscriptSource,
    TranscriptStatus,
    WorkerRunSummary,
)

from .deepgram import DeepgramClient
from .storage import TranscriptBlobStore
from .taddy import TaddyClient, count_words, is_quota_exhaustion_error

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
BATCH_DELAY_SECONDS = 0.1

_KIND_TO_STATUS = {
    "full": TranscriptStatus.FULL,
    "partial": TranscriptStatus.PARTIAL,
    "processing": TranscriptStatus.PROCESSING,
    "not_found": TranscriptStatus.NO_TRANSCRIPT_FOUND,
    "no_match": TranscriptStatus.NO_MATCH,
    "error": TranscriptStatus.ERROR,
}


class RunState(str, Enum):
    """Stages of a worker run."""

    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    SELECTING = "selecting"
    BATCHING = "batching"
    PER_EPISODE = "per_episode"
    AGGREGATING = "aggregating"
    RELEASED = "released"


@dataclass
class RunContext:
    """State shared by all episode tasks of one run.

    Only mutated from synchronous code on the event loop thread, so no
    locking is needed.
    """

    quota_exhausted: bool = False
    fallback_attempts: int = 0
    state: RunState = RunState.IDLE
    skipped_episodes: int = 0
    started_at: float = field(default_factory=time.time)

    def transition(self, state: RunState) -> None:
        logger.debug(f"Transcript worker state: {self.state.value} -> {state.value}")
        self.state = state


def status_for_result(result: TranscriptResult) -> TranscriptStatus:
    """Persisted status for a provider result."""
    return _KIND_TO_STATUS[result.kind]


def aggregate_results(
    results: list[ProcessingResult],
    ctx: RunContext,
    total_episodes: int,
) -> WorkerRunSummary:
    """Fold per-episode results into the run summary."""
    status_counts = {status.value: 0 for status in TranscriptStatus}
    for result in results:
        status_counts[result.status.value] += 1
    available = sum(1 for r in results if r.has_text)

    fallback_successes = sum(1 for r in results if r.fallback_succeeded)
    elapsed = [r.elapsed_ms for r in results]

    return WorkerRunSummary(
        total_episodes=total_episodes,
        processed_episodes=len(results),
        available_transcripts=available,
        processing_count=status_counts["processing"],
        error_count=(
            status_counts["no_transcript_found"]
            + status_counts["no_match"]
            + status_counts["error"]
        ),
        status_counts=status_counts,
        fallback_attempts=ctx.fallback_attempts,
        fallback_successes=fallback_successes,
        fallback_failures=ctx.fallback_attempts - fallback_successes,
        total_elapsed_ms=int((time.time() - ctx.started_at) * 1000),
        average_processing_time_ms=int(sum(elapsed) / len(elapsed)) if elapsed else 0,
        quota_exhausted=ctx.quota_exhausted,
        skipped_episodes=ctx.skipped_episodes,
    )


class TranscriptWorker:
    """Acquires transcripts for recently published episodes."""

    def __init__(
        self,
        selector: EpisodeCutoffSelector,
        provider,
        metadata: TranscriptMetadataStore,
        blob_store,
        lock,
        fallback=None,
        config: Optional[WorkerConfig] = None,
        fallback_config: Optional[FallbackConfig] = None,
        lock_key: str = TRANSCRIPT_WORKER_LOCK_KEY,
    ):
        """Initialize the worker.

        Args:
            selector: Finds candidate episodes
            provider: Primary transcript provider (``fetch_transcript``)
            metadata: Transcript metadata store
            blob_store: Transcript blob store (``write``)
            lock: Advisory lock guarding the whole run
            fallback: Fallback transcriber (``transcribe``); None disables fallback
            config: Run settings
            fallback_config: Fallback gate and budget
            lock_key: Advisory lock key
        """
        self.selector = selector
        self.provider = provider
        self.metadata = metadata
        self.blob_store = blob_store
        self.lock = lock
        self.fallback = fallback
        self.config = config or WorkerConfig()
        self.fallback_config = fallback_config or FallbackConfig()
        self.lock_key = lock_key

    async def run(self, recheck_mode: Optional[bool] = None) -> WorkerRunSummary:
        """Run one pass over recent episodes.

        Args:
            recheck_mode: Override the configured re-check mode for this run

        Returns:
            The run summary. lock_acquired is False when another instance
            holds the lock.

        Raises:
            SelectionError: If candidate selection fails.
        """
        ctx = RunContext()
        recheck = self.config.recheck_mode if recheck_mode is None else recheck_mode

        with self.lock.hold(self.lock_key) as acquired:
            if not acquired:
                logger.warning(
                    f"Transcript worker lock '{self.lock_key}' is held by another instance - skipping run"
                )
                return WorkerRunSummary(
                    lock_acquired=False,
                    total_elapsed_ms=int((time.time() - ctx.started_at) * 1000),
                )

            ctx.transition(RunState.LOCK_ACQUIRED)
            try:
                ctx.transition(RunState.SELECTING)
                episodes = self.selector.select(
                    self.config.lookback_hours,
                    self.config.max_requests,
                    recheck_mode=recheck,
                    recheck_count=self.config.recheck_count,
                )
                episodes = episodes[: self.config.max_requests]
                logger.info(
                    f"Transcript worker starting: {len(episodes)} episodes "
                    f"(lookback={self.config.lookback_hours}h, max={self.config.max_requests}, "
                    f"concurrency={self.config.concurrency}, recheck={recheck})"
                )

                ctx.transition(RunState.BATCHING)
                results = await self._process_batches(ctx, episodes, recheck)

                ctx.transition(RunState.AGGREGATING)
                summary = aggregate_results(results, ctx, len(episodes))
            finally:
                ctx.transition(RunState.RELEASED)

        logger.info(f"Transcript worker run complete: {summary.model_dump_json()}")
        return summary

    async def _process_batches(
        self, ctx: RunContext, episodes: list[EpisodeWithShow], recheck: bool
    ) -> list[ProcessingResult]:
        semaphore = asyncio.Semaphore(self.config.concurrency)
        batches = [episodes[i : i + BATCH_SIZE] for i in range(0, len(episodes), BATCH_SIZE)]
        results: list[ProcessingResult] = []

        for index, batch in enumerate(batches):
            if ctx.quota_exhausted:
                ctx.skipped_episodes += sum(len(b) for b in batches[index:])
                logger.warning(
                    f"Provider quota exhausted - stopping early, "
                    f"{ctx.skipped_episodes} episodes left unprocessed"
                )
                break

            if index > 0:
                await asyncio.sleep(BATCH_DELAY_SECONDS)

            logger.info(f"Processing batch {index + 1}/{len(batches)} ({len(batch)} episodes)")
            ctx.transition(RunState.PER_EPISODE)
            outcomes = await asyncio.gather(
                *(self._process_with_limit(semaphore, ctx, episode, recheck) for episode in batch),
                return_exceptions=True,
            )
            ctx.transition(RunState.BATCHING)

            for episode, outcome in zip(batch, outcomes):
                if outcome is None:
                    continue
                if isinstance(outcome, ProcessingResult):
                    results.append(outcome)
                elif isinstance(outcome, Exception):
                    results.append(self._record_failure(ctx, episode, outcome, recheck, 0))
                else:
                    raise outcome

        return results

    async def _process_with_limit(
        self,
        semaphore: asyncio.Semaphore,
        ctx: RunContext,
        episode: EpisodeWithShow,
        recheck: bool,
    ) -> Optional[ProcessingResult]:
        async with semaphore:
            # Queued behind the semaphore when the breaker tripped: never started
            if ctx.quota_exhausted:
                ctx.skipped_episodes += 1
                logger.debug(f"Skipping episode {episode.id} - provider quota exhausted")
                return None

            start_time = time.time()
            try:
                result = await self.process_episode(ctx, episode, recheck)
            except Exception as e:
                elapsed_ms = int((time.time() - start_time) * 1000)
                return self._record_failure(ctx, episode, e, recheck, elapsed_ms)
            result.elapsed_ms = int((time.time() - start_time) * 1000)
            return result

    async def process_episode(
        self, ctx: RunContext, episode: EpisodeWithShow, recheck: bool = False
    ) -> ProcessingResult:
        """Fetch, store and record the transcript for one episode.

        Storage and database errors propagate to the caller, which records
        them as an error result.
        """
        feed_url = episode.show.rss_url if episode.show else None
        if not feed_url or not episode.guid:
            logger.warning(
                f"Episode {episode.id} has no feed URL or GUID - cannot look it up"
            )
            result: TranscriptResult = TranscriptNoMatch()
            source = None
        else:
            result = await self.provider.fetch_transcript(feed_url, episode.guid)
            source = TranscriptSource.TADDY

        status = status_for_result(result)

        match result:
            case FullTranscript() | PartialTranscript():
                storage_path = await asyncio.to_thread(
                    self.blob_store.write, episode.show_id, episode.id, result.text
                )
                self.metadata.insert(
                    episode.id,
                    storage_path,
                    status,
                    word_count=result.word_count,
                    source=result.source,
                    recheck_mode=recheck,
                )
                logger.info(
                    f"Stored {status.value} transcript for episode {episode.id} "
                    f"({result.word_count} words)"
                )
                return ProcessingResult(
                    episode_id=episode.id,
                    status=status,
                    storage_path=storage_path,
                    word_count=result.word_count,
                )

            case ProcessingTranscript():
                self.metadata.insert(
                    episode.id,
                    "",
                    status,
                    word_count=0,
                    source=result.source,
                    recheck_mode=recheck,
                )
                logger.info(f"Transcript still processing for episode {episode.id}")
                return ProcessingResult(episode_id=episode.id, status=status, word_count=0)

            case TranscriptNotFound() | TranscriptNoMatch():
                self.metadata.insert(episode.id, "", status, source=source, recheck_mode=recheck)
                primary = ProcessingResult(episode_id=episode.id, status=status)
                return await self._maybe_fallback(ctx, episode, result.kind, primary)

            case TranscriptError():
                self.metadata.insert(
                    episode.id,
                    "",
                    status,
                    source=source,
                    error_details=format_error_details(result.message, DOWNLOAD_ERROR),
                    recheck_mode=recheck,
                )
                primary = ProcessingResult(
                    episode_id=episode.id, status=status, error=result.message
                )
                if is_quota_exhaustion_error(result.message):
                    ctx.quota_exhausted = True
                    primary.quota_exhausted = True
                    logger.warning(
                        f"Provider quota exhausted while processing episode {episode.id}: "
                        f"{result.message}"
                    )
                    return primary
                return await self._maybe_fallback(ctx, episode, result.kind, primary)

            case _:
                assert_never(result)

    async def _maybe_fallback(
        self,
        ctx: RunContext,
        episode: EpisodeWithShow,
        kind: str,
        primary: ProcessingResult,
    ) -> ProcessingResult:
        """Try the fallback transcriber if the gate and budget allow it."""
        if (
            self.fallback is None
            or not self.fallback_config.enabled
            or kind not in self.fallback_config.statuses
            or ctx.quota_exhausted
        ):
            return primary

        if ctx.fallback_attempts >= self.fallback_config.max_per_run:
            logger.warning(
                f"Fallback budget of {self.fallback_config.max_per_run} reached - "
                f"leaving episode {episode.id} as {primary.status.value}"
            )
            return primary

        # Reserved before the first await so concurrent tasks cannot overrun the budget
        ctx.fallback_attempts += 1
        primary.fallback_attempted = True
        logger.info(
            f"Attempting fallback transcription for episode {episode.id} "
            f"({kind}, attempt {ctx.fallback_attempts}/{self.fallback_config.max_per_run})"
        )

        try:
            fallback_result = await self.fallback.transcribe(episode.episode_url)
            if fallback_result.success and fallback_result.transcript:
                storage_path = await asyncio.to_thread(
                    self.blob_store.write, episode.show_id, episode.id, fallback_result.transcript
                )
                word_count = count_words(fallback_result.transcript)
                self.metadata.update(
                    episode.id,
                    storage_path,
                    TranscriptStatus.FULL,
                    word_count,
                    TranscriptSource.DEEPGRAM,
                    None,
                )
                logger.info(
                    f"Fallback transcription succeeded for episode {episode.id} "
                    f"({word_count} words, {fallback_result.processing_time_ms}ms)"
                )
                return ProcessingResult(
                    episode_id=episode.id,
                    status=TranscriptStatus.FULL,
                    storage_path=storage_path,
                    word_count=word_count,
                    fallback_attempted=True,
                    fallback_succeeded=True,
                )
            error = f"Taddy: {kind}; Deepgram: {fallback_result.error or 'no transcript returned'}"
        except Exception as e:
            error = f"Taddy: {kind}; Deepgram exception: {e}"

        logger.warning(f"Fallback transcription failed for episode {episode.id}: {error}")
        try:
            self.metadata.update(
                episode.id,
                "",
                TranscriptStatus.ERROR,
                None,
                TranscriptSource.DEEPGRAM,
                format_error_details(error, GENERATION_ERROR),
            )
        except Exception as e:
            logger.warning(f"Could not record fallback failure for episode {episode.id}: {e}")

        primary.error = error
        return primary

    def _record_failure(
        self,
        ctx: RunContext,
        episode: EpisodeWithShow,
        error: BaseException,
        recheck: bool,
        elapsed_ms: int,
    ) -> ProcessingResult:
        """Turn an unexpected per-episode exception into an error result."""
        message = str(error) or type(error).__name__
        logger.error(f"Failed to process episode {episode.id}: {message}")

        try:
            self.metadata.insert(
                episode.id,
                "",
                TranscriptStatus.ERROR,
                error_details=format_error_details(message),
                recheck_mode=recheck,
            )
        except Exception as e:
            logger.warning(f"Could not record error for episode {episode.id}: {e}")

        quota = is_quota_exhaustion_error(message)
        if quota:
            ctx.quota_exhausted = True

        return ProcessingResult(
            episode_id=episode.id,
            status=TranscriptStatus.ERROR,
            elapsed_ms=elapsed_ms,
            error=message,
            quota_exhausted=quota,
        )

    async def aclose(self) -> None:
        """Close HTTP clients held by the providers."""
        for client in (self.provider, self.fallback):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def create_worker(config: Config, session_factory=None, engine=None) -> TranscriptWorker:
    """Build a worker with clients configured from config and the environment.

    Args:
        config: Loaded configuration
        session_factory: Session factory (built from engine if omitted)
        engine: SQLAlchemy engine (built from config.database_url if omitted)

    Raises:
        ConfigError: If provider or storage credentials are missing.
    """
    from db.database import get_engine, get_session_factory

    engine = engine or get_engine(config.database_url)
    session_factory = session_factory or get_session_factory(engine)

    taddy = config.taddy
    if not taddy.user_id or not taddy.api_key:
        raise ConfigError(f"{taddy.user_id_env} and {taddy.api_key_env} must be set")

    storage = config.storage
    if not storage.endpoint or not storage.access_key or not storage.secret_key:
        raise ConfigError(
            f"{storage.endpoint_env}, {storage.access_key_env} and "
            f"{storage.secret_key_env} must be set"
        )

    fallback = None
    if config.fallback.enabled:
        if config.fallback.api_key:
            fallback = DeepgramClient(
                api_key=config.fallback.api_key,
                model=config.fallback.model,
                max_file_size_mb=config.fallback.max_file_size_mb,
                timeout=config.fallback.timeout,
            )
        else:
            logger.warning(
                f"Fallback transcription enabled but {config.fallback.api_key_env} not set - disabled"
            )

    return TranscriptWorker(
        selector=EpisodeCutoffSelector(session_factory),
        provider=TaddyClient(
            user_id=taddy.user_id,
            api_key=taddy.api_key,
            endpoint=taddy.endpoint,
            timeout=taddy.timeout,
        ),
        metadata=TranscriptMetadataStore(session_factory),
        blob_store=TranscriptBlobStore(
            access_key=storage.access_key,
            secret_key=storage.secret_key,
            bucket=storage.bucket,
            endpoint=storage.endpoint,
        ),
        lock=create_advisory_lock(
            engine,
            enabled=config.worker.use_advisory_lock,
            session_factory=session_factory,
        ),
        fallback=fallback,
        config=config.worker,
        fallback_config=config.fallback,
    )
