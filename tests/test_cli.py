"""Tests for the podbrief CLI."""

import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from typer.testing import CliRunner

from podbrief.cli import app
from worker.storage import encode_transcript

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'podbrief.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "podbrief v" in result.stdout


def test_show_config(database_url):
    result = runner.invoke(app, ["show-config"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["worker"]["lookback_hours"] == 24
    assert data["storage"]["bucket"] == "transcripts"


def test_show_config_invalid_env(monkeypatch):
    monkeypatch.setenv("TRANSCRIPT_LOOKBACK", "500")

    result = runner.invoke(app, ["show-config"])

    assert result.exit_code == 1


def test_init_db_and_status(database_url):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0

    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "Transcripts: 0" in result.stdout


def test_run_without_credentials_fails(database_url, monkeypatch):
    monkeypatch.delenv("TADDY_USER_ID", raising=False)
    monkeypatch.delenv("TADDY_API_KEY", raising=False)

    result = runner.invoke(app, ["run"])

    assert result.exit_code == 1


@pytest.fixture
def seeded_transcript(database_url):
    """An episode with a full transcript row in the CLI's database."""
    from db.database import get_engine, get_session_factory, init_db
    from db.models import Episode, Show
    from db.transcripts import TranscriptMetadataStore
    from podbrief.models import TranscriptStatus

    engine = get_engine(database_url)
    init_db(engine)
    session_factory = get_session_factory(engine)

    db = session_factory()
    show = Show(rss_url="https://example.com/feed.xml", title="Show")
    db.add(show)
    db.commit()
    episode = Episode(show_id=show.id, guid="guid-1", title="Episode")
    db.add(episode)
    db.commit()
    episode_id, show_id = episode.id, show.id
    db.close()

    store = TranscriptMetadataStore(session_factory)
    store.insert(episode_id, f"{show_id}/{episode_id}.jsonl.gz", TranscriptStatus.FULL, word_count=2)
    yield episode_id, show_id, store
    engine.dispose()


def test_show_transcript_prints_text(seeded_transcript):
    episode_id, show_id, _ = seeded_transcript
    body = MagicMock()
    body.read.return_value = encode_transcript(show_id, episode_id, "hello world")

    with patch("worker.storage.boto3") as mock_boto3:
        mock_boto3.client.return_value.get_object.return_value = {"Body": body}
        result = runner.invoke(app, ["show-transcript", episode_id])

    assert result.exit_code == 0
    assert "hello world" in result.stdout


def test_show_transcript_missing_blob(seeded_transcript):
    episode_id, _, _ = seeded_transcript

    with patch("worker.storage.boto3") as mock_boto3:
        client = mock_boto3.client.return_value
        client.head_object.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
        )
        result = runner.invoke(app, ["show-transcript", episode_id])

    assert result.exit_code == 1
    client.get_object.assert_not_called()


def test_reset_transcript(seeded_transcript):
    episode_id, _, store = seeded_transcript

    result = runner.invoke(app, ["reset-transcript", episode_id])

    assert result.exit_code == 0
    assert store.get_active(episode_id) is None

    result = runner.invoke(app, ["reset-transcript", episode_id])
    assert result.exit_code == 1
