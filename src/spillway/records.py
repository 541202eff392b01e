"""Reading one split end to end: allocator, spiller, connector, outcome."""

from collections.abc import Callable
from dataclasses import dataclass, replace
import hashlib
import json
import logging

import pyarrow as pa

from spillway.allocator import DEFAULT_MAX_BYTES, BlockAllocator
from spillway.config import SpillConfig
from spillway.constraints import ConstraintEvaluator
from spillway.sources import SourceRegistry
from spillway.spiller import BlockSpiller, SpillResult
from spillway.splits import Split, TableName
from spillway.storage.base import SpillStore

logger = logging.getLogger(__name__)


def _split_digest(split: Split) -> str:
    identity = {
        "table": [split.table.schema_name, split.table.table_name],
        "properties": dict(split.properties),
    }
    encoded = json.dumps(identity, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


@dataclass(frozen=True)
class ReadRecordsRequest:
    """
    Read the rows of one split.

    ``max_block_bytes`` and ``max_inline_block_bytes`` of 0 fall back to the
    service configuration.
    """

    catalog: str
    query_id: str
    table: TableName
    schema: pa.Schema
    split: Split
    constraints: ConstraintEvaluator | None = None
    max_block_bytes: int = 0
    max_inline_block_bytes: int = 0


class RecordService:
    """Run a connector's RecordSource for a split and collect its single outcome."""

    def __init__(
        self,
        registry: SourceRegistry,
        store: SpillStore,
        base_config: SpillConfig,
        max_allocator_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        """
        Initialize the service.

        Args:
            registry: Connectors by catalog.
            store: Where spilled Blocks are written.
            base_config: Defaults; each request overrides location, key, request id
                and size limits from its split.
            max_allocator_bytes: Memory ceiling of each request's allocator.
        """
        self.registry = registry
        self.store = store
        self.base_config = base_config
        self.max_allocator_bytes = max_allocator_bytes

    def config_for(self, request: ReadRecordsRequest) -> SpillConfig:
        """
        Spill settings for one split.

        A split with a pre-assigned location spills below it under the query id.
        Otherwise every split of the query shares the base location, so the
        request id also carries a digest of the split's table and properties.
        Re-reading the same split maps to the same keys.
        """
        config = self.base_config.with_split(request.split).with_limits(
            request.max_block_bytes, request.max_inline_block_bytes
        )
        request_id = request.query_id
        if request.split.spill_location is None:
            request_id = f"{request.query_id}-{_split_digest(request.split)}"
        return replace(config, request_id=request_id)

    def read_records(
        self, request: ReadRecordsRequest, liveness: Callable[[], bool] | None = None
    ) -> SpillResult:
        """
        Read a split.

        The inline Block of a small result is detached from the request's
        allocator and owned by the caller; everything else is released before
        returning.

        Returns:
            SpillResult: The inline Block or the spilled Block locations.

        Raises:
            CapabilityMismatch: If no record source is registered for the catalog.
            SpillFailure: If spilling failed.
            InvalidRowData: If the connector produced rows that do not match the schema.
        """
        source = self.registry.record_source(request.catalog)
        config = self.config_for(request)
        check = liveness or (lambda: True)

        logger.info(
            "read_records called for %s.%s split %s",
            request.catalog,
            request.table,
            dict(request.split.properties),
        )
        with BlockAllocator(self.max_allocator_bytes) as allocator:
            with BlockSpiller(
                self.store,
                config,
                allocator,
                request.schema,
                constraint_evaluator=request.constraints,
                liveness=check,
            ) as spiller:
                source.read_with_constraint(spiller, request, check)
                result = spiller.close()
            if result.inline_block is not None:
                allocator.detach(result.inline_block)
        return result
