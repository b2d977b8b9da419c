"""Object storage for transcript blobs (S3-compatible: R2, Supabase, MinIO)."""

import gzip
import json
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from db.database import utcnow

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/gzip"


class StorageError(Exception):
    """Error reading or writing a transcript blob."""

    pass


def transcript_key(show_id: str, episode_id: str) -> str:
    """Object key for an episode's transcript."""
    return f"{show_id}/{episode_id}.jsonl.gz"


def encode_transcript(show_id: str, episode_id: str, text: str) -> bytes:
    """Serialize a transcript as one gzipped JSON line."""
    line = json.dumps(
        {
            "episode_id": episode_id,
            "show_id": show_id,
            "transcript": text,
            "created_at": utcnow().isoformat() + "Z",
        },
        ensure_ascii=False,
    )
    return gzip.compress((line + "\n").encode("utf-8"))


def decode_transcript(data: bytes) -> dict:
    """Inverse of encode_transcript: return the first JSON line."""
    lines = gzip.decompress(data).decode("utf-8").splitlines()
    if not lines:
        raise StorageError("Transcript blob is empty")
    return json.loads(lines[0])


class TranscriptBlobStore:
    """Client for writing transcript blobs to object storage."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket: str,
        endpoint: str,
    ):
        """Initialize the storage client.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket: Bucket name (normally "transcripts")
            endpoint: S3 endpoint URL (e.g., https://<account>.r2.cloudflarestorage.com)
        """
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )

    def write(self, show_id: str, episode_id: str, text: str) -> str:
        """Upload a transcript, replacing any existing object.

        Args:
            show_id: Show the episode belongs to
            episode_id: Episode ID
            text: Transcript text

        Returns:
            The storage path (object key) written.

        Raises:
            StorageError: If the upload fails.
        """
        key = transcript_key(show_id, episode_id)
        body = encode_transcript(show_id, episode_id, text)

        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=CONTENT_TYPE,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload transcript to storage: {e}") from e

        logger.debug(
            f"Uploaded transcript {key} ({len(text)} chars, {len(body)} bytes compressed)"
        )
        return key

    def read(self, key: str) -> dict:
        """Download and decode a transcript blob.

        Args:
            key: Object key

        Returns:
            The stored JSON object.
        """
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            data = response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to download transcript {key}: {e}") from e
        return decode_transcript(data)

    def exists(self, key: str) -> bool:
        """Check if a transcript blob exists.

        Args:
            key: Object key to check

        Returns:
            True if the object exists, False otherwise
        """
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return False
            raise StorageError(f"Failed to check transcript {key}: {e}") from e
