"""Tests for the transcript metadata store."""

import pytest

from db.transcripts import (
    DATABASE_ERROR,
    DOWNLOAD_ERROR,
    ERROR_DETAILS_MAX_LENGTH,
    GENERATION_ERROR,
    TRANSCRIPT_PARSE_ERROR,
    InsertOutcome,
    TranscriptMetadataStore,
    TranscriptNotFoundError,
    classify_error,
    format_error_details,
)
from db.models import Transcript
from podbrief.models import TranscriptSource, TranscriptStatus


@pytest.fixture
def store(session_factory):
    return TranscriptMetadataStore(session_factory)


@pytest.fixture
def episode(make_show, make_episode):
    return make_episode(make_show())


def active_rows(session_factory, episode_id):
    db = session_factory()
    try:
        return (
            db.query(Transcript)
            .filter(Transcript.episode_id == episode_id, Transcript.deleted_at.is_(None))
            .all()
        )
    finally:
        db.close()


class TestInsert:
    def test_insert(self, store, episode):
        outcome = store.insert(
            episode.id,
            "show/ep.jsonl.gz",
            TranscriptStatus.FULL,
            word_count=2,
            source=TranscriptSource.TADDY,
        )

        assert outcome == InsertOutcome.INSERTED
        row = store.get_active(episode.id)
        assert row.storage_path == "show/ep.jsonl.gz"
        assert row.initial_status == "full"
        assert row.current_status == "full"
        assert row.word_count == 2
        assert row.source == "taddy"

    def test_second_insert_is_noop(self, store, episode, session_factory):
        store.insert(episode.id, "a", TranscriptStatus.FULL, word_count=2, source=TranscriptSource.TADDY)
        outcome = store.insert(episode.id, "", TranscriptStatus.NO_MATCH)

        assert outcome == InsertOutcome.SKIPPED
        rows = active_rows(session_factory, episode.id)
        assert len(rows) == 1
        assert rows[0].current_status == "full"
        assert rows[0].word_count == 2

    def test_recheck_overwrites(self, store, episode, session_factory):
        store.insert(
            episode.id,
            "",
            TranscriptStatus.ERROR,
            error_details="download_error: boom",
        )
        outcome = store.insert(
            episode.id,
            "show/ep.jsonl.gz",
            TranscriptStatus.FULL,
            word_count=10,
            source=TranscriptSource.TADDY,
            error_details="should be cleared",
            recheck_mode=True,
        )

        assert outcome == InsertOutcome.OVERWRITTEN
        rows = active_rows(session_factory, episode.id)
        assert len(rows) == 1
        assert rows[0].current_status == "full"
        assert rows[0].word_count == 10
        assert rows[0].source == "taddy"
        assert rows[0].storage_path == "show/ep.jsonl.gz"
        assert rows[0].error_details is None

    def test_recheck_overwrite_keeps_error_for_error_status(self, store, episode):
        store.insert(episode.id, "x", TranscriptStatus.FULL, word_count=3)
        store.insert(
            episode.id,
            "",
            TranscriptStatus.ERROR,
            error_details="download_error: timeout",
            recheck_mode=True,
        )

        row = store.get_active(episode.id)
        assert row.current_status == "error"
        assert row.error_details == "download_error: timeout"


class TestUpdate:
    def test_update_keeps_initial_status(self, store, episode):
        store.insert(episode.id, "", TranscriptStatus.NO_MATCH, source=TranscriptSource.TADDY)
        store.update(
            episode.id,
            "show/ep.jsonl.gz",
            TranscriptStatus.FULL,
            4,
            TranscriptSource.DEEPGRAM,
            None,
        )

        row = store.get_active(episode.id)
        assert row.initial_status == "no_match"
        assert row.current_status == "full"
        assert row.source == "deepgram"
        assert row.word_count == 4
        assert row.error_details is None

    def test_update_missing_row_raises(self, store, episode):
        with pytest.raises(TranscriptNotFoundError):
            store.update(episode.id, "", TranscriptStatus.ERROR, None, TranscriptSource.DEEPGRAM, "x")

    def test_overwrite_missing_row_raises(self, store, episode):
        with pytest.raises(TranscriptNotFoundError):
            store.overwrite(episode.id, "", TranscriptStatus.FULL)


class TestSoftDelete:
    def test_soft_delete(self, store, episode):
        store.insert(episode.id, "", TranscriptStatus.NO_MATCH)

        assert store.soft_delete(episode.id) is True
        assert store.get_active(episode.id) is None
        assert store.soft_delete(episode.id) is False

    def test_insert_after_soft_delete(self, store, episode, session_factory):
        store.insert(episode.id, "", TranscriptStatus.NO_MATCH)
        store.soft_delete(episode.id)

        assert store.insert(episode.id, "p", TranscriptStatus.FULL, word_count=1) == InsertOutcome.INSERTED
        assert len(active_rows(session_factory, episode.id)) == 1

    def test_active_episode_ids(self, store, make_show, make_episode):
        show = make_show()
        first = make_episode(show, guid="a")
        second = make_episode(show, guid="b")
        third = make_episode(show, guid="c")
        store.insert(first.id, "", TranscriptStatus.NO_MATCH)
        store.insert(second.id, "", TranscriptStatus.NO_MATCH)
        store.soft_delete(second.id)

        assert store.active_episode_ids([first.id, second.id, third.id]) == {first.id}
        assert store.active_episode_ids([]) == set()


def test_status_counts(store, make_show, make_episode):
    show = make_show()
    for guid, status in [("a", TranscriptStatus.FULL), ("b", TranscriptStatus.FULL), ("c", TranscriptStatus.ERROR)]:
        store.insert(make_episode(show, guid=guid).id, "", status)

    counts = store.status_counts()

    assert counts["full"] == 2
    assert counts["error"] == 1
    assert counts["processing"] == 0


class TestErrorDetails:
    def test_prefix(self):
        assert format_error_details("timeout", DOWNLOAD_ERROR) == "download_error: timeout"

    def test_empty(self):
        assert format_error_details(None) is None
        assert format_error_details("") is None

    @pytest.mark.parametrize("length", [1, 200, 243, 244, 245, 260, 1000, 10000])
    def test_bounded(self, length):
        details = format_error_details("x" * length, GENERATION_ERROR)

        assert len(details) <= ERROR_DETAILS_MAX_LENGTH
        assert details.startswith("generation_error: ")

    def test_truncation_marks_ellipsis(self):
        details = format_error_details("y" * 500, DOWNLOAD_ERROR)
        assert len(details) == ERROR_DETAILS_MAX_LENGTH
        assert details.endswith("...")

    def test_existing_prefix_not_duplicated(self):
        assert (
            format_error_details("download_error: refused", DOWNLOAD_ERROR)
            == "download_error: refused"
        )

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Deepgram fallback exception: boom", GENERATION_ERROR),
            ("Taddy: no_match; Deepgram: File too large", GENERATION_ERROR),
            ("Failed to parse transcript JSON", TRANSCRIPT_PARSE_ERROR),
            ("database is locked", DATABASE_ERROR),
            ("Taddy Business API error: connection reset", DOWNLOAD_ERROR),
        ],
    )
    def test_classify(self, message, expected):
        assert classify_error(message) == expected

    def test_stored_value_fits_column(self, store, episode):
        store.insert(
            episode.id,
            "",
            TranscriptStatus.ERROR,
            error_details=format_error_details("z" * 5000, DOWNLOAD_ERROR),
        )
        row = store.get_active(episode.id)
        assert len(row.error_details) <= 260
        assert row.error_details.startswith("download_error: ")
