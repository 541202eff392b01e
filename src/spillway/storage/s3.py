"""AWS S3 spill store implementation."""

import logging
from typing import Any

from typing_extensions import override

from spillway.exceptions import StorageError
from spillway.storage.base import SpillLocation, SpillStore

logger = logging.getLogger(__name__)

# Error codes a retry cannot fix
PERMANENT_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "InvalidAccessKeyId",
        "InvalidBucketName",
        "NoSuchBucket",
        "SignatureDoesNotMatch",
    }
)


def _error_code(exc: Exception) -> str | None:
    from botocore.exceptions import ClientError

    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


class S3SpillStore(SpillStore):
    """
    Write spilled Blocks to AWS S3 (or any S3-compatible endpoint).

    Uses a boto3 S3 client; pass one in to control region, credentials and
    endpoint, or let the store build a default client.
    """

    def __init__(
        self,
        client: Any = None,
        region: str | None = None,
        server_side_encryption: str | None = None,
    ) -> None:
        """
        Initialize S3SpillStore.

        Args:
            client: Boto3 S3 client instance. If None, will create default client.
            region: Region for the default client (ignored when client is given).
            server_side_encryption: Optional ServerSideEncryption value for put_object
                (e.g. 'AES256'), applied on top of the payload encryption.

        Raises:
            ImportError: If boto3 is not installed.
        """
        try:
            import boto3
        except ImportError as e:
            raise ImportError(
                "boto3 is required for S3SpillStore. Install with: pip install spillway[s3]"
            ) from e

        self.client = client or boto3.client("s3", region_name=region)
        self.server_side_encryption = server_side_encryption

        logger.info("S3SpillStore initialized")

    @override
    def write(self, location: SpillLocation, payload: bytes) -> None:
        """
        Upload a payload with put_object.

        Raises:
            StorageError: If S3 rejects the upload for a reason retrying cannot fix.
            OSError: If the upload fails otherwise.
        """
        kwargs: dict[str, Any] = {"Bucket": location.bucket, "Key": location.key, "Body": payload}
        if self.server_side_encryption:
            kwargs["ServerSideEncryption"] = self.server_side_encryption
        try:
            self.client.put_object(**kwargs)
        except Exception as e:
            logger.warning("Error writing S3 object %s: %s", location.uri, e)
            if _error_code(e) in PERMANENT_ERROR_CODES:
                raise StorageError(f"Failed to write S3 object {location.uri}: {e}") from e
            raise OSError(f"Failed to write S3 object {location.uri}: {e}") from e

        logger.debug("Wrote %d bytes to %s", len(payload), location.uri)

    @override
    def read(self, location: SpillLocation) -> bytes:
        """
        Download a payload with get_object.

        Raises:
            FileNotFoundError: If no object exists at the location.
            OSError: If the S3 object cannot be read.
        """
        try:
            response = self.client.get_object(Bucket=location.bucket, Key=location.key)
            return response["Body"].read()
        except Exception as e:
            if _error_code(e) in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"No spilled object at {location.uri}") from e
            logger.exception("Error reading S3 object %s: %s", location.uri, e)
            raise OSError(f"Failed to read S3 object {location.uri}: {e}") from e

    @override
    def get_metadata(self) -> dict[str, Any]:
        region = getattr(getattr(self.client, "meta", None), "region_name", None)
        return {"store_type": "s3", "region": region}
