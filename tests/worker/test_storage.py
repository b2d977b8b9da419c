"""Tests for the transcript blob store."""

import gzip
import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from worker.storage import (
    StorageError,
    TranscriptBlobStore,
    decode_transcript,
    encode_transcript,
    transcript_key,
)


@pytest.fixture
def mock_boto3():
    """Mock boto3 client."""
    with patch("worker.storage.boto3") as mock:
        yield mock


def make_store(mock_boto3, mock_client):
    mock_boto3.client.return_value = mock_client
    return TranscriptBlobStore(
        access_key="test-key",
        secret_key="test-secret",
        bucket="transcripts",
        endpoint="https://test.r2.cloudflarestorage.com",
    )


def test_transcript_key():
    assert transcript_key("show-1", "ep-1") == "show-1/ep-1.jsonl.gz"


def test_encode_is_one_gzipped_json_line():
    data = encode_transcript("show-1", "ep-1", "Hello world")

    text = gzip.decompress(data).decode("utf-8")
    assert text.endswith("\n")
    assert text.count("\n") == 1

    record = json.loads(text)
    assert record["episode_id"] == "ep-1"
    assert record["show_id"] == "show-1"
    assert record["transcript"] == "Hello world"
    assert record["created_at"].endswith("Z")


def test_decode_empty_blob():
    with pytest.raises(StorageError):
        decode_transcript(gzip.compress(b""))


def test_write_uploads_gzip(mock_boto3):
    mock_client = MagicMock()
    store = make_store(mock_boto3, mock_client)

    path = store.write("show-1", "ep-1", "Hello world")

    assert path == "show-1/ep-1.jsonl.gz"
    mock_boto3.client.assert_called_once_with(
        "s3",
        endpoint_url="https://test.r2.cloudflarestorage.com",
        aws_access_key_id="test-key",
        aws_secret_access_key="test-secret",
    )
    kwargs = mock_client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "transcripts"
    assert kwargs["Key"] == "show-1/ep-1.jsonl.gz"
    assert kwargs["ContentType"] == "application/gzip"
    assert decode_transcript(kwargs["Body"])["transcript"] == "Hello world"


def test_write_failure_raises_storage_error(mock_boto3):
    mock_client = MagicMock()
    mock_client.put_object.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
    )
    store = make_store(mock_boto3, mock_client)

    with pytest.raises(StorageError, match="Failed to upload"):
        store.write("show-1", "ep-1", "text")


def test_read(mock_boto3):
    mock_client = MagicMock()
    body = MagicMock()
    body.read.return_value = encode_transcript("show-1", "ep-1", "stored text")
    mock_client.get_object.return_value = {"Body": body}
    store = make_store(mock_boto3, mock_client)

    assert store.read("show-1/ep-1.jsonl.gz")["transcript"] == "stored text"
    mock_client.get_object.assert_called_once_with(Bucket="transcripts", Key="show-1/ep-1.jsonl.gz")


def test_file_exists(mock_boto3):
    mock_client = MagicMock()
    store = make_store(mock_boto3, mock_client)

    assert store.exists("show-1/ep-1.jsonl.gz") is True

    mock_client.head_object.side_effect = ClientError(
        {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
    )
    assert store.exists("show-1/missing.jsonl.gz") is False


def test_file_exists_other_error(mock_boto3):
    mock_client = MagicMock()
    mock_client.head_object.side_effect = ClientError(
        {"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject"
    )
    store = make_store(mock_boto3, mock_client)

    with pytest.raises(StorageError, match="Failed to check transcript"):
        store.exists("show-1/ep-1.jsonl.gz")
