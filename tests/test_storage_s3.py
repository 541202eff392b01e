"""Tests for S3SpillStore."""

from unittest.mock import Mock

import pytest

from spillway.allocator import BlockAllocator
from spillway.config import SpillConfig
from spillway.exceptions import ErrorKind, SpillFailure, StorageError, classify
from spillway.schema import SchemaBuilder
from spillway.spiller import BlockSpiller
from spillway.storage.base import SpillLocation
from spillway.storage.s3 import S3SpillStore

try:
    import moto  # noqa: F401

    HAS_MOTO = True
except ImportError:
    HAS_MOTO = False


def test_s3_store_wraps_write_errors() -> None:
    """Test that client failures surface as OSError."""
    client = Mock()
    client.put_object.side_effect = RuntimeError("throttled")
    store = S3SpillStore(client=client)

    with pytest.raises(OSError, match="Failed to write S3 object s3://bucket/key"):
        store.write(SpillLocation("bucket", "key"), b"payload")


def test_s3_store_wraps_read_errors() -> None:
    """Test that read failures surface as OSError."""
    client = Mock()
    client.get_object.side_effect = RuntimeError("no such key")
    store = S3SpillStore(client=client)

    with pytest.raises(OSError, match="Failed to read S3 object"):
        store.read(SpillLocation("bucket", "key"))


@pytest.mark.parametrize("code", ["AccessDenied", "NoSuchBucket"])
def test_s3_store_permanent_write_errors(code: str) -> None:
    """Test that errors a retry cannot fix are classified as fatal."""
    from botocore.exceptions import ClientError

    client = Mock()
    client.put_object.side_effect = ClientError({"Error": {"Code": code, "Message": code}}, "PutObject")
    store = S3SpillStore(client=client)

    with pytest.raises(StorageError, match="Failed to write S3 object") as excinfo:
        store.write(SpillLocation("bucket", "key"), b"payload")

    assert isinstance(excinfo.value, OSError)
    assert classify(excinfo.value) is ErrorKind.FATAL


def test_s3_store_throttling_is_transient() -> None:
    """Test that other client errors stay retryable."""
    from botocore.exceptions import ClientError

    client = Mock()
    client.put_object.side_effect = ClientError({"Error": {"Code": "SlowDown", "Message": "slow"}}, "PutObject")
    store = S3SpillStore(client=client)

    with pytest.raises(OSError) as excinfo:
        store.write(SpillLocation("bucket", "key"), b"payload")

    assert not isinstance(excinfo.value, StorageError)
    assert classify(excinfo.value) is ErrorKind.TRANSIENT


def test_s3_permanent_error_is_not_retried_by_spiller() -> None:
    """Test that a scan writing to a forbidden bucket fails after one attempt."""
    from botocore.exceptions import ClientError

    client = Mock()
    client.put_object.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
    )
    config = SpillConfig(
        spill_location=SpillLocation("bucket", "athena-spill", directory=True),
        request_id="query-1",
        max_inline_block_bytes=0,
        num_spill_threads=0,
        max_spill_attempts=5,
        retry_backoff_seconds=0,
    )
    schema = SchemaBuilder().add_int_field("id").build()

    with BlockAllocator() as allocator:
        spiller = BlockSpiller(S3SpillStore(client=client), config, allocator, schema)
        spiller.write_row({"id": 1})
        with pytest.raises(SpillFailure) as excinfo:
            spiller.close()

    assert client.put_object.call_count == 1
    [(_, error)] = excinfo.value.failures
    assert isinstance(error, StorageError)


def test_s3_store_server_side_encryption() -> None:
    """Test that the SSE setting is forwarded to put_object."""
    client = Mock()
    store = S3SpillStore(client=client, server_side_encryption="AES256")

    store.write(SpillLocation("bucket", "key"), b"payload")

    client.put_object.assert_called_once_with(
        Bucket="bucket", Key="key", Body=b"payload", ServerSideEncryption="AES256"
    )


@pytest.mark.skipif(
    not HAS_MOTO,
    reason="Requires moto for mocking",
)
def test_s3_store_with_mock_s3() -> None:
    """Test S3SpillStore with mocked S3 using moto."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        s3_client = boto3.client("s3", region_name="us-east-1")
        s3_client.create_bucket(Bucket="spill-bucket")

        store = S3SpillStore(client=s3_client)
        location = SpillLocation("spill-bucket", "athena-spill/query/0")

        store.write(location, b"encrypted block")

        assert store.read(location) == b"encrypted block"
        stored = s3_client.get_object(Bucket="spill-bucket", Key="athena-spill/query/0")
        assert stored["Body"].read() == b"encrypted block"

        metadata = store.get_metadata()
        assert metadata["store_type"] == "s3"
        assert metadata["region"] == "us-east-1"

        with pytest.raises(OSError):
            store.read(SpillLocation("spill-bucket", "athena-spill/query/1"))


@pytest.mark.skipif(
    not HAS_MOTO,
    reason="Requires moto for mocking",
)
def test_s3_store_missing_bucket_and_key() -> None:
    """Test error mapping against mocked S3."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        s3_client = boto3.client("s3", region_name="us-east-1")
        s3_client.create_bucket(Bucket="spill-bucket")
        store = S3SpillStore(client=s3_client)

        with pytest.raises(StorageError):
            store.write(SpillLocation("missing-bucket", "athena-spill/query/0"), b"payload")

        with pytest.raises(FileNotFoundError):
            store.read(SpillLocation("spill-bucket", "athena-spill/query/0"))
