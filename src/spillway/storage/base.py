"""Spill locations and the abstract storage backend spilled Blocks are written to."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse


@dataclass(frozen=True)
class SpillLocation:
    """
    Address of a spilled object (or of a directory of them) in external storage.

    Attributes:
        bucket: Bucket (or top-level directory) name.
        key: Object key, or key prefix when ``directory`` is True.
        directory: Whether the location is a prefix under which objects are written.
    """

    bucket: str
    key: str
    directory: bool = False

    def __post_init__(self) -> None:
        if not self.bucket:
            raise ValueError("bucket must be non-empty")

    def child(self, request_id: str, sequence: int) -> "SpillLocation":
        """
        Derive the location of one spilled Block.

        Layout: ``<key>/<request_id>/<sequence>``. Distinct sequence numbers
        always give distinct locations.

        Args:
            request_id: Identifier of the logical scan.
            sequence: Monotonic number of the Block within the scan.
        """
        if sequence < 0:
            raise ValueError("sequence must be non-negative")
        prefix = self.key.rstrip("/")
        parts = [part for part in (prefix, request_id, str(sequence)) if part]
        return SpillLocation(self.bucket, "/".join(parts), directory=False)

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @classmethod
    def from_uri(cls, uri: str, directory: bool = False) -> "SpillLocation":
        """
        Parse an ``s3://bucket/key`` URI.

        Raises:
            ValueError: If the URI is not an S3 URI or lacks bucket or key.
        """
        parsed = urlparse(uri)
        bucket = parsed.netloc
        key = parsed.path.lstrip("/")
        if parsed.scheme != "s3" or not bucket or not key:
            raise ValueError(f"Invalid S3 URI: {uri}. Expected: s3://bucket/key")
        return cls(bucket, key, directory=directory)

    def to_dict(self) -> dict[str, Any]:
        return {"bucket": self.bucket, "key": self.key, "directory": self.directory}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpillLocation":
        return cls(data["bucket"], data["key"], bool(data.get("directory", False)))


class SpillStore(ABC):
    """
    Abstract base class for spill storage backends.

    Provides a unified interface for writing and reading spilled payloads
    (S3, local filesystem, memory). Implementations raise OSError for
    storage failures so that callers can treat them as transient.
    """

    @abstractmethod
    def write(self, location: SpillLocation, payload: bytes) -> None:
        """
        Store a payload at a location, replacing any existing object.

        Args:
            location: Target location (never a directory).
            payload: Encrypted serialized Block.

        Raises:
            OSError: If the payload cannot be written.
        """
        ...

    @abstractmethod
    def read(self, location: SpillLocation) -> bytes:
        """
        Return the payload stored at a location.

        Raises:
            OSError: If the payload cannot be read (FileNotFoundError if missing).
        """
        ...

    @abstractmethod
    def get_metadata(self) -> dict[str, Any]:
        """
        Return metadata about the store.

        Returns:
            dict[str, Any]: Metadata dictionary containing at least
                - 'store_type': Type of store ('s3', 'local', 'memory')
        """
        ...
