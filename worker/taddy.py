"""Client for the Taddy transcript API (primary provider)."""

import logging
import time
from typing import Any, Optional

import httpx

from podbrief.models import (
    FullTranscript,
    PartialTranscript,
    ProcessingTranscript,
    TranscriptError,
    TranscriptNoMatch,
    TranscriptNotFound,
    TranscriptResult,
    TranscriptSource,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.taddy.org/graphql"
USER_AGENT = "podbrief/0.1 (transcript worker)"

# Any upstream signal of credit exhaustion is normalised to this message.
CREDITS_EXCEEDED = "CREDITS_EXCEEDED"

QUOTA_PATTERNS = (
    "http 429",
    "credits exceeded",
    "quota exceeded",
    "rate limit",
    "too many requests",
    "credits_exceeded",
)

SERIES_QUERY = """
query GetPodcastSeries($rssUrl: String!) {
  getPodcastSeries(rssUrl: $rssUrl) {
    uuid
    name
  }
}
"""

EPISODE_QUERY = """
query GetPodcastEpisode($guid: String!, $seriesUuid: ID!) {
  getPodcastEpisode(guid: $guid, seriesUuidForLookup: $seriesUuid) {
    uuid
    name
    guid
    taddyTranscribeStatus
  }
}
"""

TRANSCRIPT_QUERY = """
query GetEpisodeTranscript($uuid: ID!) {
  getEpisodeTranscript(uuid: $uuid) {
    id
    text
    speaker
    startTimecode
    endTimecode
  }
}
"""


def is_quota_exhaustion_error(message: Optional[str]) -> bool:
    """Check whether an error message means the provider quota is used up."""
    if not message:
        return False
    lowered = message.lower()
    return any(pattern in lowered for pattern in QUOTA_PATTERNS)


def count_words(text: str) -> int:
    """Whitespace word count."""
    return len(text.split())


class TaddyAPIError(Exception):
    """Error response from the Taddy API."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_quota_exhausted(self) -> bool:
        return (
            self.status_code == 429
            or self.code == CREDITS_EXCEEDED
            or is_quota_exhaustion_error(str(self))
        )


class TaddyClient:
    """Async GraphQL client with persistent connection pooling."""

    def __init__(
        self,
        user_id: str,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            user_id: Taddy user ID
            api_key: Taddy API key
            endpoint: GraphQL endpoint URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "X-USER-ID": user_id,
                "X-API-KEY": api_key,
                "User-Agent": USER_AGENT,
            },
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            transport=transport or httpx.AsyncHTTPTransport(retries=2),
        )

    async def aclose(self) -> None:
        """Close the HTTP client and release connections."""
        await self.client.aclose()

    async def _request(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(
            self.endpoint, json={"query": query, "variables": variables}
        )
        if response.status_code == 429:
            raise TaddyAPIError("HTTP 429: Too Many Requests", status_code=429)
        response.raise_for_status()

        payload = response.json()
        errors = payload.get("errors")
        if errors:
            message = "; ".join(err.get("message", "unknown error") for err in errors)
            code = next(
                (
                    err.get("extensions", {}).get("code")
                    for err in errors
                    if err.get("extensions", {}).get("code")
                ),
                None,
            )
            raise TaddyAPIError(message, status_code=response.status_code, code=code)
        return payload.get("data") or {}

    async def fetch_transcript(self, feed_url: str, episode_guid: str) -> TranscriptResult:
        """Fetch the transcript for an episode by feed URL and GUID.

        Never raises: API and network failures come back as TranscriptError,
        with quota exhaustion reported as CREDITS_EXCEEDED.

        Args:
            feed_url: RSS feed URL of the show
            episode_guid: GUID of the episode in that feed

        Returns:
            One of the TranscriptResult variants.
        """
        start_time = time.time()

        try:
            data = await self._request(SERIES_QUERY, {"rssUrl": feed_url})
            series = data.get("getPodcastSeries")
            if not series:
                logger.debug(f"No podcast series found for {feed_url}")
                return TranscriptNoMatch()

            data = await self._request(
                EPISODE_QUERY, {"guid": episode_guid, "seriesUuid": series["uuid"]}
            )
            episode = data.get("getPodcastEpisode")
            if not episode:
                logger.debug(f"No episode found for GUID {episode_guid} in series {series['uuid']}")
                return TranscriptNoMatch()

            data = await self._request(TRANSCRIPT_QUERY, {"uuid": episode["uuid"]})
            result = self._classify(data.get("getEpisodeTranscript"), episode)

        except (httpx.HTTPError, TaddyAPIError, ValueError, KeyError) as e:
            elapsed_ms = int((time.time() - start_time) * 1000)
            quota = (
                e.is_quota_exhausted
                if isinstance(e, TaddyAPIError)
                else is_quota_exhaustion_error(str(e))
            )
            if quota:
                logger.warning(f"Taddy API quota exhausted ({feed_url}, {episode_guid}): {e}")
                return TranscriptError(message=CREDITS_EXCEEDED)

            logger.error(
                f"Taddy transcript lookup failed for {episode_guid} after {elapsed_ms}ms: {e}"
            )
            return TranscriptError(message=f"Taddy Business API error: {e}")

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Taddy transcript lookup completed for {episode_guid}: {result.kind} ({elapsed_ms}ms)"
        )
        return result

    def _classify(
        self, items: Optional[list[dict[str, Any]]], episode: dict[str, Any]
    ) -> TranscriptResult:
        """Map transcript items and the episode's transcribe status to a result."""
        status = episode.get("taddyTranscribeStatus")
        text = self._assemble_text(items or [])

        if status == "FAILED":
            return TranscriptNotFound(credits_consumed=1)

        if status == "PROCESSING":
            if text:
                # Generation has started and some text is already available
                return PartialTranscript(
                    text=text,
                    word_count=count_words(text),
                    source=TranscriptSource.TADDY,
                    credits_consumed=1,
                )
            return ProcessingTranscript(source=TranscriptSource.TADDY, credits_consumed=1)

        if not text:
            return TranscriptNotFound(credits_consumed=1)

        # Text without a Taddy transcription job came from the podcaster's feed
        source = TranscriptSource.TADDY if status == "COMPLETED" else TranscriptSource.PODCASTER
        return FullTranscript(
            text=text,
            word_count=count_words(text),
            source=source,
            credits_consumed=1,
        )

    @staticmethod
    def _assemble_text(items: list[dict[str, Any]]) -> str:
        """Join transcript items into "Speaker: text" lines."""
        lines = []
        for item in items:
            text = (item.get("text") or "").strip()
            if not text:
                continue
            speaker = (item.get("speaker") or "").strip()
            lines.append(f"{speaker}: {text}" if speaker else text)
        return "\n".join(lines).strip()
