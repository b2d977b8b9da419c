"""Pydantic data models for podbrief."""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class TranscriptStatus(str, Enum):
    """Persisted status of a transcript row."""

    FULL = "full"
    PARTIAL = "partial"
    PROCESSING = "processing"
    NO_TRANSCRIPT_FOUND = "no_transcript_found"
    NO_MATCH = "no_match"
    ERROR = "error"


class TranscriptSource(str, Enum):
    """Where a stored transcript came from."""

    TADDY = "taddy"
    PODCASTER = "podcaster"
    DEEPGRAM = "deepgram"

    @property
    def is_fallback(self) -> bool:
        return self is TranscriptSource.DEEPGRAM


class ShowReference(BaseModel):
    """Show data needed for the provider lookup and for logging."""

    id: str
    rss_url: Optional[str] = None
    title: Optional[str] = None


class EpisodeWithShow(BaseModel):
    """A candidate episode together with its show."""

    id: str
    show_id: str
    guid: Optional[str] = None
    episode_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    pub_date: Optional[str] = None
    duration_sec: Optional[int] = None
    created_at: Optional[str] = None
    show: Optional[ShowReference] = None


# Provider results. Each variant is tagged by ``kind`` so the union can be
# matched exhaustively.


class FullTranscript(BaseModel):
    kind: Literal["full"] = "full"
    text: str
    word_count: int
    source: TranscriptSource = TranscriptSource.TADDY
    credits_consumed: int = 0


class PartialTranscript(BaseModel):
    kind: Literal["partial"] = "partial"
    text: str
    word_count: int
    source: TranscriptSource = TranscriptSource.TADDY
    credits_consumed: int = 0


class ProcessingTranscript(BaseModel):
    kind: Literal["processing"] = "processing"
    source: TranscriptSource = TranscriptSource.TADDY
    credits_consumed: int = 0


class TranscriptNotFound(BaseModel):
    kind: Literal["not_found"] = "not_found"
    credits_consumed: int = 0


class TranscriptNoMatch(BaseModel):
    kind: Literal["no_match"] = "no_match"
    credits_consumed: int = 0


class TranscriptError(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    credits_consumed: int = 0


TranscriptResult = Annotated[
    Union[
        FullTranscript,
        PartialTranscript,
        ProcessingTranscript,
        TranscriptNotFound,
        TranscriptNoMatch,
        TranscriptError,
    ],
    Field(discriminator="kind"),
]

# Result kinds the fallback provider may be asked to recover from.
FALLBACK_ELIGIBLE_KINDS = frozenset({"not_found", "no_match", "error"})


class FallbackResult(BaseModel):
    """Outcome of a fallback transcription attempt."""

    success: bool
    transcript: Optional[str] = None
    error: Optional[str] = None
    processing_time_ms: int = 0
    file_size_mb: Optional[float] = None


class ProcessingResult(BaseModel):
    """Outcome of processing a single episode during a run."""

    episode_id: str
    status: TranscriptStatus
    storage_path: Optional[str] = None
    word_count: Optional[int] = None
    elapsed_ms: int = 0
    error: Optional[str] = None
    fallback_attempted: bool = False
    fallback_succeeded: bool = False
    quota_exhausted: bool = False

    @property
    def has_text(self) -> bool:
        """Whether transcript text was stored for the episode."""
        return self.status in (TranscriptStatus.FULL, TranscriptStatus.PARTIAL)


class WorkerRunSummary(BaseModel):
    """Aggregate counts for one transcript worker run."""

    total_episodes: int = 0
    processed_episodes: int = 0
    available_transcripts: int = 0
    processing_count: int = 0
    error_count: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    fallback_attempts: int = 0
    fallback_successes: int = 0
    fallback_failures: int = 0
    total_elapsed_ms: int = 0
    average_processing_time_ms: int = 0
    quota_exhausted: bool = False
    lock_acquired: bool = True
    skipped_episodes: int = 0
