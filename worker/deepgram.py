"""Fallback transcription through the Deepgram pre-recorded audio API."""

import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

from podbrief.models import FallbackResult

logger = logging.getLogger(__name__)

DEEPGRAM_ENDPOINT = "https://api.deepgram.com/v1/listen"
DEFAULT_MODEL = "nova-3"


def validate_audio_url(audio_url: Optional[str]) -> Optional[str]:
    """Return an error message if the URL cannot be sent for transcription."""
    if not audio_url:
        return "No audio URL available for episode"
    parsed = urlparse(audio_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return f"Invalid audio URL: {audio_url}"
    return None


class DeepgramClient:
    """Transcribes remote audio files by URL."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_file_size_mb: int = 500,
        timeout: float = 600.0,
        endpoint: str = DEEPGRAM_ENDPOINT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_key: Deepgram API key
            model: Speech model name
            max_file_size_mb: Audio files larger than this are refused
            timeout: Read timeout for the transcription request in seconds
            endpoint: Listen endpoint URL
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        if not api_key:
            raise ValueError("Deepgram API key is required")

        self.model = model
        self.max_file_size_mb = max_file_size_mb
        self.endpoint = endpoint
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30.0),
            follow_redirects=True,
            transport=transport,
        )
        self._auth_headers = {"Authorization": f"Token {api_key}"}

    async def aclose(self) -> None:
        await self.client.aclose()

    async def transcribe(self, audio_url: Optional[str]) -> FallbackResult:
        """Transcribe an episode's audio.

        Never raises; every failure is reported through the result.

        Args:
            audio_url: Public URL of the audio enclosure

        Returns:
            FallbackResult with the transcript text on success.
        """
        start_time = time.time()

        def elapsed() -> int:
            return int((time.time() - start_time) * 1000)

        url_error = validate_audio_url(audio_url)
        if url_error:
            return FallbackResult(success=False, error=url_error, processing_time_ms=elapsed())

        file_size_mb, size_error = await self._check_file_size(audio_url)
        if size_error:
            logger.warning(f"Skipping fallback transcription for {audio_url}: {size_error}")
            return FallbackResult(
                success=False,
                error=size_error,
                processing_time_ms=elapsed(),
                file_size_mb=file_size_mb,
            )

        try:
            response = await self.client.post(
                self.endpoint,
                params={
                    "model": self.model,
                    "smart_format": "true",
                    "diarize": "true",
                    "filler_words": "false",
                },
                headers=self._auth_headers,
                json={"url": audio_url},
            )
        except httpx.TimeoutException:
            return FallbackResult(
                success=False,
                error="Deepgram request timed out - file may be too large or processing took too long",
                processing_time_ms=elapsed(),
                file_size_mb=file_size_mb,
            )
        except httpx.HTTPError as e:
            return FallbackResult(
                success=False,
                error=f"Deepgram request failed: {e}",
                processing_time_ms=elapsed(),
                file_size_mb=file_size_mb,
            )

        if response.status_code == 429:
            error = "Rate limit exceeded - too many concurrent requests"
        elif response.status_code == 504:
            error = "Deepgram request timed out - file may be too large or processing took too long"
        elif response.status_code >= 400:
            error = f"Deepgram API error: HTTP {response.status_code} - {response.text[:200]}"
        else:
            error = None

        if error:
            return FallbackResult(
                success=False,
                error=error,
                processing_time_ms=elapsed(),
                file_size_mb=file_size_mb,
            )

        try:
            payload = response.json()
            transcript = payload["results"]["channels"][0]["alternatives"][0]["transcript"]
        except (ValueError, KeyError, IndexError, TypeError):
            transcript = None

        if not transcript or not transcript.strip():
            return FallbackResult(
                success=False,
                error="Deepgram returned no transcript text",
                processing_time_ms=elapsed(),
                file_size_mb=file_size_mb,
            )

        logger.info(
            f"Deepgram transcription completed for {audio_url}: "
            f"{len(transcript.split())} words ({elapsed()}ms)"
        )
        return FallbackResult(
            success=True,
            transcript=transcript,
            processing_time_ms=elapsed(),
            file_size_mb=file_size_mb,
        )

    async def _check_file_size(self, audio_url: str) -> tuple[Optional[float], Optional[str]]:
        """HEAD the audio file and check Content-Length against the limit.

        Returns:
            (size in MB or None, error message or None)
        """
        try:
            response = await self.client.head(audio_url, timeout=30.0)
        except httpx.HTTPError as e:
            return None, f"Could not determine file size: {e}"

        if response.status_code >= 400:
            return None, f"Could not determine file size: HTTP {response.status_code}"

        content_length = response.headers.get("content-length")
        if not content_length:
            return None, "Could not determine file size: missing Content-Length header"

        try:
            size_bytes = int(content_length)
        except ValueError:
            return None, f"Could not determine file size: invalid Content-Length '{content_length}'"

        if size_bytes <= 0:
            return None, f"Invalid file size: Content-Length is {size_bytes}"

        file_size_mb = round(size_bytes / (1024 * 1024), 2)
        if file_size_mb > self.max_file_size_mb:
            return (
                file_size_mb,
                f"File too large: {file_size_mb}MB exceeds {self.max_file_size_mb}MB limit",
            )
        return file_size_mb, None
