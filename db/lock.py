"""Cluster-wide advisory locks.

The transcript worker takes one lock for the whole run so two instances never
process the same nightly batch. Acquisition never blocks: a held lock (or a
failure to reach the database) means the caller skips its run.
"""

import logging
import os
import socket
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional, Protocol
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import get_session_factory, utcnow
from .models import WorkerLock

logger = logging.getLogger(__name__)

TRANSCRIPT_WORKER_LOCK_KEY = "transcript_worker"


class AdvisoryLock(Protocol):
    """A non-blocking mutex shared by every worker instance."""

    def acquire(self, key: str) -> bool:
        ...

    def release(self, key: str) -> None:
        ...


class _HoldMixin:
    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """Acquire for the duration of a with block; yields whether it was acquired."""
        acquired = self.acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


class NullLock(_HoldMixin):
    """Always acquires. Used when advisory locking is turned off."""

    def acquire(self, key: str) -> bool:
        return True

    def release(self, key: str) -> None:
        pass


class PostgresAdvisoryLock(_HoldMixin):
    """Session-level PostgreSQL advisory lock.

    The lock belongs to the database connection that took it, so the
    connection is kept open until release.
    """

    def __init__(self, engine):
        self.engine = engine
        self._connections = {}

    def acquire(self, key: str) -> bool:
        if key in self._connections:
            return False

        conn = None
        try:
            conn = self.engine.connect()
            acquired = bool(
                conn.execute(
                    text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": key}
                ).scalar()
            )
            conn.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Error acquiring advisory lock '{key}': {e}")
            if conn is not None:
                conn.close()
            return False

        logger.debug(f"Advisory lock '{key}' {'acquired' if acquired else 'not acquired'}")
        if not acquired:
            conn.close()
            return False

        self._connections[key] = conn
        return True

    def release(self, key: str) -> None:
        conn = self._connections.pop(key, None)
        if conn is None:
            return
        try:
            conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": key})
            conn.commit()
            logger.debug(f"Advisory lock '{key}' released")
        except SQLAlchemyError as e:
            logger.error(f"Error releasing advisory lock '{key}': {e}")
        finally:
            # Closing the connection drops any session lock it still holds
            conn.close()


class TableAdvisoryLock(_HoldMixin):
    """Advisory lock backed by a row in worker_locks.

    Works on any database. A row older than stale_after is assumed to belong
    to a crashed worker and is reclaimed.
    """

    def __init__(
        self,
        session_factory,
        holder: Optional[str] = None,
        stale_after: timedelta = timedelta(hours=6),
    ):
        self.session_factory = session_factory
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self.stale_after = stale_after

    def acquire(self, key: str) -> bool:
        try:
            if self._try_insert(key):
                return True
            if self._reclaim_stale(key):
                return self._try_insert(key)
            logger.debug(f"Advisory lock '{key}' not acquired - held by another worker")
            return False
        except SQLAlchemyError as e:
            logger.warning(f"Error acquiring advisory lock '{key}': {e}")
            return False

    def _try_insert(self, key: str) -> bool:
        db = self.session_factory()
        try:
            db.add(WorkerLock(key=key, holder=self.holder, acquired_at=utcnow()))
            db.commit()
            logger.debug(f"Advisory lock '{key}' acquired by {self.holder}")
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()

    def _reclaim_stale(self, key: str) -> bool:
        db = self.session_factory()
        try:
            deleted = (
                db.query(WorkerLock)
                .filter(
                    WorkerLock.key == key,
                    WorkerLock.acquired_at < utcnow() - self.stale_after,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            if deleted:
                logger.warning(f"Reclaimed stale advisory lock '{key}'")
            return deleted > 0
        finally:
            db.close()

    def release(self, key: str) -> None:
        db = self.session_factory()
        try:
            (
                db.query(WorkerLock)
                .filter(WorkerLock.key == key, WorkerLock.holder == self.holder)
                .delete(synchronize_session=False)
            )
            db.commit()
            logger.debug(f"Advisory lock '{key}' released")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error releasing advisory lock '{key}': {e}")
        finally:
            db.close()


def create_advisory_lock(engine, enabled: bool = True, session_factory=None):
    """Pick the lock implementation for an engine.

    Args:
        engine: SQLAlchemy engine the worker uses
        enabled: When False, returns a NullLock
        session_factory: Session factory for the table lock (built from engine if omitted)
    """
    if not enabled:
        return NullLock()
    if engine.dialect.name == "postgresql":
        return PostgresAdvisoryLock(engine)
    return TableAdvisoryLock(session_factory or get_session_factory(engine))
