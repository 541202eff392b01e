"""
Dividing a table scan into independently executable splits.

A split carries everything its reader needs: the table, string properties
narrowing the read (an offset window or one partition's values), and the
spill location and key its results are written under. Split responses are
paged; the continuation token is bound to the scan it was issued for.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
import hashlib
import logging
import math
from types import MappingProxyType
from typing import Any
import uuid

from spillway.block import Block
from spillway.config import DEFAULT_SPILL_PREFIX
from spillway.crypto import EncryptionKey, KeyFactory, LocalKeyFactory
from spillway.exceptions import CapabilityMismatch
from spillway.storage.base import SpillLocation

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 100_000
DEFAULT_MAX_SPLITS_PER_RESPONSE = 1000

OFFSET_PROPERTY = "offset"
LIMIT_PROPERTY = "limit"


@dataclass(frozen=True, order=True)
class TableName:
    schema_name: str
    table_name: str

    def __str__(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


@dataclass(frozen=True)
class Split:
    """
    One unit of parallel scan work.

    Attributes:
        table: Table the split reads from.
        properties: Read-only string properties narrowing the read.
        spill_location: Directory the split's spilled Blocks go to, if pre-assigned.
        encryption_key: Key for the split's spilled Blocks, if pre-assigned.
    """

    table: TableName
    properties: Mapping[str, str] = field(default_factory=dict, hash=False)
    spill_location: SpillLocation | None = None
    encryption_key: EncryptionKey | None = None

    def __post_init__(self) -> None:
        frozen = MappingProxyType({str(k): str(v) for k, v in self.properties.items()})
        object.__setattr__(self, "properties", frozen)

    def get_property(self, name: str, default: str | None = None) -> str | None:
        return self.properties.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": {"schema_name": self.table.schema_name, "table_name": self.table.table_name},
            "properties": dict(self.properties),
            "spill_location": self.spill_location.to_dict() if self.spill_location else None,
            "encryption_key": self.encryption_key.to_dict() if self.encryption_key else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Split":
        location = data.get("spill_location")
        key = data.get("encryption_key")
        return cls(
            table=TableName(**data["table"]),
            properties=data.get("properties") or {},
            spill_location=SpillLocation.from_dict(location) if location else None,
            encryption_key=EncryptionKey.from_dict(key) if key else None,
        )


@dataclass(frozen=True)
class GetSplitsRequest:
    catalog: str
    query_id: str
    table: TableName
    continuation_token: str | None = None

    def with_token(self, token: str | None) -> "GetSplitsRequest":
        return replace(self, continuation_token=token)

    @property
    def scan_id(self) -> str:
        """Stable identifier of the scan this request belongs to."""
        digest = hashlib.sha256(f"{self.query_id}\x00{self.catalog}\x00{self.table}".encode())
        return digest.hexdigest()[:16]


@dataclass(frozen=True)
class GetSplitsResponse:
    catalog: str
    splits: list[Split]
    continuation_token: str | None = None


class SplitPlanner:
    """
    Turn a table scan request into pages of splits.

    Example:
        >>> planner = SplitPlanner("spill-bucket", concurrency_limit=10_000)
        >>> token = None
        >>> while True:
        ...     response = planner.plan_offset_splits(request.with_token(token), rows)
        ...     schedule(response.splits)
        ...     token = response.continuation_token
        ...     if not token:
        ...         break
    """

    def __init__(
        self,
        spill_bucket: str,
        spill_prefix: str = DEFAULT_SPILL_PREFIX,
        key_factory: KeyFactory | None = None,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        max_splits_per_response: int = DEFAULT_MAX_SPLITS_PER_RESPONSE,
        encrypt: bool = True,
    ) -> None:
        """
        Initialize the planner.

        Args:
            spill_bucket: Bucket split spill locations are created in.
            spill_prefix: Key prefix for split spill locations.
            key_factory: Source of per-split encryption keys (default: LocalKeyFactory).
            concurrency_limit: Largest estimated row count a single split may cover.
            max_splits_per_response: Page size of split responses.
            encrypt: Whether splits get encryption keys at all.

        Raises:
            ValueError: If a limit is not positive or the bucket is empty.
        """
        if not spill_bucket:
            raise ValueError("spill_bucket must be non-empty")
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be positive")
        if max_splits_per_response < 1:
            raise ValueError("max_splits_per_response must be positive")

        self.spill_bucket = spill_bucket
        self.spill_prefix = spill_prefix.strip("/")
        self.key_factory = key_factory or LocalKeyFactory()
        self.concurrency_limit = concurrency_limit
        self.max_splits_per_response = max_splits_per_response
        self.encrypt = encrypt

    def make_spill_location(self, query_id: str, split_id: str | None = None) -> SpillLocation:
        """Directory for one split's spilled Blocks; unique per split."""
        split_id = split_id or str(uuid.uuid4())
        key = "/".join(part for part in (self.spill_prefix, query_id, split_id) if part)
        return SpillLocation(self.spill_bucket, key, directory=True)

    def make_encryption_key(self) -> EncryptionKey | None:
        return self.key_factory.create() if self.encrypt else None

    def plan_offset_splits(self, request: GetSplitsRequest, estimated_rows: int) -> GetSplitsResponse:
        """
        Split a scan into offset windows of at most ``concurrency_limit`` rows.

        The last window carries no limit so rows beyond the estimate are still
        read. A table estimated empty gets one split with no narrowing.

        Raises:
            ValueError: If estimated_rows is negative.
            CapabilityMismatch: If the continuation token is not from this scan.
        """
        if estimated_rows < 0:
            raise ValueError("estimated_rows must be non-negative")

        count = max(1, math.ceil(estimated_rows / self.concurrency_limit))
        properties: list[dict[str, str]] = []
        if estimated_rows == 0:
            properties.append({})
        else:
            for index in range(count):
                window = {OFFSET_PROPERTY: str(index * self.concurrency_limit)}
                if index < count - 1:
                    window[LIMIT_PROPERTY] = str(self.concurrency_limit)
                properties.append(window)

        logger.info(
            "Planned %d offset split(s) for %s (estimated rows=%d, limit=%d)",
            len(properties),
            request.table,
            estimated_rows,
            self.concurrency_limit,
        )
        return self._page(request, properties)

    def plan_partition_splits(
        self,
        request: GetSplitsRequest,
        partitions: Block | None,
        partition_columns: Sequence[str],
    ) -> GetSplitsResponse:
        """
        Emit one split per partition row, keyed by the partition column values.

        A missing or empty partition Block gets one split with no narrowing.

        Raises:
            CapabilityMismatch: If a partition column is not in the partition Block
                or the continuation token is not from this scan.
        """
        properties: list[dict[str, str]] = []
        if partitions is None or partitions.row_count == 0:
            properties.append({})
        else:
            missing = [name for name in partition_columns if name not in partitions.schema.names]
            if missing:
                raise CapabilityMismatch(f"Partition columns not in partition block: {missing}")
            for row in partitions.rows():
                properties.append({name: str(row[name]) for name in partition_columns})

        logger.info("Planned %d partition split(s) for %s", len(properties), request.table)
        return self._page(request, properties)

    def _page(self, request: GetSplitsRequest, properties: list[dict[str, str]]) -> GetSplitsResponse:
        start = self._parse_token(request, len(properties))
        end = min(start + self.max_splits_per_response, len(properties))
        scan_id = request.scan_id

        splits = [
            Split(
                table=request.table,
                properties=properties[index],
                spill_location=self.make_spill_location(request.query_id, f"{scan_id}-{index}"),
                encryption_key=self.make_encryption_key(),
            )
            for index in range(start, end)
        ]
        token = f"{scan_id}:{end}" if end < len(properties) else None
        return GetSplitsResponse(catalog=request.catalog, splits=splits, continuation_token=token)

    @staticmethod
    def _parse_token(request: GetSplitsRequest, total: int) -> int:
        token = request.continuation_token
        if not token:
            return 0
        scan_id, _, index = token.partition(":")
        if scan_id != request.scan_id:
            raise CapabilityMismatch(f"Continuation token {token!r} was not issued for this scan")
        try:
            position = int(index)
        except ValueError:
            raise CapabilityMismatch(f"Malformed continuation token {token!r}") from None
        if not 0 < position < total:
            raise CapabilityMismatch(f"Continuation token {token!r} is out of range")
        return position
