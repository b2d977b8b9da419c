"""Background scheduler for the nightly transcript run."""

import asyncio
import logging
import random
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from podbrief.config import Config

logger = logging.getLogger(__name__)


class TranscriptSyncScheduler:
    """Runs the transcript worker periodically.

    Each run sleeps the base interval plus a random jitter, so multiple
    instances drift apart instead of hitting the lock at the same second.
    """

    def __init__(
        self,
        worker_factory: Callable,
        interval_seconds: int = 86400,  # Default: nightly
        jitter_seconds: int = 300,      # Default: up to 5 minutes
        initial_delay: Optional[int] = None,
    ):
        """Initialize the scheduler.

        Args:
            worker_factory: Returns a new TranscriptWorker for each run
            interval_seconds: Base interval between runs
            jitter_seconds: Random jitter added to interval (0 to jitter_seconds)
            initial_delay: Seconds before the first run (random 60-300 if None)
        """
        self.worker_factory = worker_factory
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.initial_delay = initial_delay
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.runs = 0

    def _get_next_interval(self) -> int:
        """Get the next sleep interval with random jitter."""
        jitter = random.randint(0, self.jitter_seconds)
        return self.interval_seconds + jitter

    async def _run_worker(self) -> None:
        """Run the worker once, logging instead of raising on failure."""
        worker = self.worker_factory()
        try:
            logger.info("Starting scheduled transcript run...")
            summary = await worker.run()
            self.runs += 1

            if not summary.lock_acquired:
                logger.info("Scheduled transcript run skipped - lock held elsewhere")
            else:
                logger.info(
                    f"Scheduled transcript run complete: {summary.processed_episodes} episodes, "
                    f"{summary.available_transcripts} available, {summary.error_count} errors"
                )
        except Exception as e:
            logger.error(f"Scheduled transcript run failed: {e}")
        finally:
            await worker.aclose()

    async def _run_loop(self) -> None:
        """Main scheduler loop."""
        initial_delay = (
            self.initial_delay if self.initial_delay is not None else random.randint(60, 300)
        )
        logger.info(f"Transcript scheduler started, first run in {initial_delay}s")
        await asyncio.sleep(initial_delay)

        while self._running:
            try:
                await self._run_worker()
            except Exception as e:
                logger.error(f"Unexpected error in transcript scheduler: {e}")

            interval = self._get_next_interval()
            next_run = datetime.now().timestamp() + interval
            logger.info(
                f"Next transcript run in {interval}s "
                f"(at {datetime.fromtimestamp(next_run).strftime('%H:%M:%S')})"
            )
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Transcript scheduler initialized")

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Transcript scheduler stopped")

    async def wait(self) -> None:
        """Block until the scheduler task ends."""
        if self._task:
            await self._task


def create_scheduler(config: Config, worker_factory: Optional[Callable] = None):
    """Create a scheduler from config.

    Args:
        config: Loaded configuration (worker.enabled, interval, jitter)
        worker_factory: Builds a worker per run (create_worker(config) if omitted)

    Returns:
        A TranscriptSyncScheduler, or None when the worker is disabled.
    """
    if not config.worker.enabled:
        logger.info("Transcript scheduler disabled via TRANSCRIPT_WORKER_ENABLED=false")
        return None

    if worker_factory is None:
        from .transcript_worker import create_worker

        worker_factory = partial(create_worker, config)

    logger.info(
        f"Transcript scheduler configured: interval={config.worker.interval_seconds}s, "
        f"jitter={config.worker.jitter_seconds}s"
    )

    return TranscriptSyncScheduler(
        worker_factory=worker_factory,
        interval_seconds=config.worker.interval_seconds,
        jitter_seconds=config.worker.jitter_seconds,
    )
