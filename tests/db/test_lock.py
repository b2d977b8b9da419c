"""Tests for advisory locks."""

from datetime import timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from db.database import utcnow
from db.lock import (
    NullLock,
    PostgresAdvisoryLock,
    TableAdvisoryLock,
    TRANSCRIPT_WORKER_LOCK_KEY,
    create_advisory_lock,
)
from db.models import WorkerLock


def test_table_lock_is_exclusive(session_factory):
    first = TableAdvisoryLock(session_factory, holder="worker-a")
    second = TableAdvisoryLock(session_factory, holder="worker-b")

    assert first.acquire(TRANSCRIPT_WORKER_LOCK_KEY) is True
    assert second.acquire(TRANSCRIPT_WORKER_LOCK_KEY) is False

    first.release(TRANSCRIPT_WORKER_LOCK_KEY)
    assert second.acquire(TRANSCRIPT_WORKER_LOCK_KEY) is True


def test_release_by_other_holder_is_ignored(session_factory):
    first = TableAdvisoryLock(session_factory, holder="worker-a")
    second = TableAdvisoryLock(session_factory, holder="worker-b")

    first.acquire("key")
    second.release("key")

    assert second.acquire("key") is False


def test_hold_releases_on_exception(session_factory):
    lock = TableAdvisoryLock(session_factory, holder="worker-a")

    try:
        with lock.hold("key") as acquired:
            assert acquired is True
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    db = session_factory()
    try:
        assert db.query(WorkerLock).count() == 0
    finally:
        db.close()


def test_hold_not_acquired_does_not_release(session_factory):
    owner = TableAdvisoryLock(session_factory, holder="worker-a")
    other = TableAdvisoryLock(session_factory, holder="worker-b")
    owner.acquire("key")

    with other.hold("key") as acquired:
        assert acquired is False

    assert other.acquire("key") is False


def test_stale_lock_is_reclaimed(session_factory, db_session):
    db_session.add(
        WorkerLock(key="key", holder="crashed", acquired_at=utcnow() - timedelta(hours=7))
    )
    db_session.commit()

    lock = TableAdvisoryLock(session_factory, holder="worker-a", stale_after=timedelta(hours=6))

    assert lock.acquire("key") is True


def test_null_lock_always_acquires():
    lock = NullLock()
    with lock.hold("key") as first:
        with lock.hold("key") as second:
            assert first and second


def test_postgres_lock_acquire_and_release():
    conn = MagicMock()
    conn.execute.return_value.scalar.return_value = True
    engine = MagicMock()
    engine.connect.return_value = conn

    lock = PostgresAdvisoryLock(engine)

    assert lock.acquire("transcript_worker") is True
    sql = str(conn.execute.call_args[0][0])
    assert "pg_try_advisory_lock(hashtext(:key))" in sql
    assert conn.execute.call_args[0][1] == {"key": "transcript_worker"}

    lock.release("transcript_worker")
    assert "pg_advisory_unlock" in str(conn.execute.call_args[0][0])
    conn.close.assert_called_once()


def test_postgres_lock_held_elsewhere():
    conn = MagicMock()
    conn.execute.return_value.scalar.return_value = False
    engine = MagicMock()
    engine.connect.return_value = conn

    lock = PostgresAdvisoryLock(engine)

    assert lock.acquire("transcript_worker") is False
    conn.close.assert_called_once()


def test_postgres_lock_error_is_not_acquired():
    engine = MagicMock()
    engine.connect.side_effect = OperationalError("connect", {}, Exception("refused"))

    assert PostgresAdvisoryLock(engine).acquire("transcript_worker") is False


def test_create_advisory_lock(engine):
    assert isinstance(create_advisory_lock(engine, enabled=False), NullLock)
    assert isinstance(create_advisory_lock(engine), TableAdvisoryLock)

    pg_engine = MagicMock()
    pg_engine.dialect.name = "postgresql"
    assert isinstance(create_advisory_lock(pg_engine), PostgresAdvisoryLock)
