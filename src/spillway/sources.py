"""Capability interfaces implemented by data-source connectors, and their registry."""

from abc import ABC, abstractmethod
from collections.abc import Callable
import logging
from typing import TYPE_CHECKING

from spillway.allocator import BlockAllocator
from spillway.block import Block
from spillway.exceptions import CapabilityMismatch
from spillway.splits import TableName

if TYPE_CHECKING:
    from spillway.records import ReadRecordsRequest
    from spillway.spiller import BlockSpiller

logger = logging.getLogger(__name__)


class MetadataSource(ABC):
    """
    What a connector knows about its catalog.

    Implementations return complete listings; paging is applied on top of them.
    Errors must propagate: an empty list means the catalog is really empty.
    """

    @abstractmethod
    def list_schemas(self) -> list[str]:
        """Return every schema name of the catalog."""
        ...

    @abstractmethod
    def list_tables(self, schema_name: str) -> list[TableName]:
        """Return every table of a schema."""
        ...

    @abstractmethod
    def estimate_row_count(self, table: TableName) -> int:
        """Return an estimate of the table's row count (0 if unknown or empty)."""
        ...

    def get_partitions(
        self, allocator: BlockAllocator, table: TableName
    ) -> tuple[Block, list[str]] | None:
        """
        Return a Block of partition values and the partition column names.

        Connectors without partitions keep the default, and their scans are
        split by row offsets instead.
        """
        return None


class RecordSource(ABC):
    """How a connector reads the rows of one split."""

    @abstractmethod
    def read_with_constraint(
        self,
        spiller: "BlockSpiller",
        request: "ReadRecordsRequest",
        liveness: Callable[[], bool],
    ) -> None:
        """
        Feed the split's rows into the spiller.

        Args:
            spiller: Sink applying the request's constraints and spilling overflow.
            request: The split being read, with its schema and table.
            liveness: Returns False once the query stops; stop reading when it does.
        """
        ...


class SourceRegistry:
    """Connectors keyed by catalog name."""

    def __init__(self) -> None:
        self._metadata: dict[str, MetadataSource] = {}
        self._records: dict[str, RecordSource] = {}

    def register(
        self,
        catalog: str,
        metadata: MetadataSource | None = None,
        records: RecordSource | None = None,
    ) -> None:
        """
        Register a connector's capabilities for a catalog.

        Raises:
            ValueError: If neither capability is given.
        """
        if metadata is None and records is None:
            raise ValueError("register needs a metadata source, a record source, or both")
        if metadata is not None:
            self._metadata[catalog] = metadata
        if records is not None:
            self._records[catalog] = records
        logger.info(
            "Registered catalog %s (metadata=%s, records=%s)",
            catalog,
            type(metadata).__name__ if metadata else None,
            type(records).__name__ if records else None,
        )

    def catalogs(self) -> list[str]:
        return sorted(self._metadata.keys() | self._records.keys())

    def metadata_source(self, catalog: str) -> MetadataSource:
        try:
            return self._metadata[catalog]
        except KeyError:
            raise CapabilityMismatch(f"No metadata source registered for catalog {catalog}") from None

    def record_source(self, catalog: str) -> RecordSource:
        try:
            return self._records[catalog]
        except KeyError:
            raise CapabilityMismatch(f"No record source registered for catalog {catalog}") from None
