"""Shared fixtures: an in-memory SQLite database with shows and episodes."""

from datetime import datetime, timedelta

import pytest

from db.database import get_engine, get_session_factory, init_db
from db.models import Episode, Show

NOW = datetime(2026, 10, 17, 6, 0, 0)


@pytest.fixture
def engine():
    """Create an in-memory SQLite database for testing."""
    engine = get_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_show(db_session):
    """Factory for show rows."""

    def _make(rss_url="https://example.com/feed.xml", title="Test Show", show_id=None):
        show = Show(rss_url=rss_url, title=title)
        if show_id:
            show.id = show_id
        db_session.add(show)
        db_session.commit()
        return show

    return _make


@pytest.fixture
def make_episode(db_session):
    """Factory for episode rows, published hours_ago before NOW."""

    def _make(show, guid="ep-1", hours_ago=1, episode_id=None, created_hours_ago=None, **kwargs):
        episode = Episode(
            show_id=show.id,
            guid=guid,
            episode_url=kwargs.pop("episode_url", f"https://cdn.example.com/{guid}.mp3"),
            title=kwargs.pop("title", f"Episode {guid}"),
            pub_date=NOW - timedelta(hours=hours_ago),
            created_at=NOW - timedelta(hours=created_hours_ago if created_hours_ago is not None else hours_ago),
            **kwargs,
        )
        if episode_id:
            episode.id = episode_id
        db_session.add(episode)
        db_session.commit()
        return episode

    return _make
