"""Tests for the source registry, MetadataService and RecordService."""

from collections.abc import Callable
from typing import Any

import pyarrow as pa
import pytest
from typing_extensions import override

from spillway.allocator import BlockAllocator
from spillway.block import Block
from spillway.config import SpillConfig
from spillway.constraints import ConstraintEvaluator, EquatableValueSet
from spillway.crypto import AesGcmBlockCrypto
from spillway.exceptions import CapabilityMismatch, InvalidRowData
from spillway.metadata import MetadataService
from spillway.pagination import ListRequest, iter_pages
from spillway.reader import SpillReader
from spillway.records import ReadRecordsRequest, RecordService
from spillway.schema import SchemaBuilder
from spillway.sources import MetadataSource, RecordSource, SourceRegistry
from spillway.spiller import BlockSpiller
from spillway.splits import OFFSET_PROPERTY, GetSplitsRequest, Split, SplitPlanner, TableName
from spillway.storage.base import SpillLocation
from spillway.storage.memory import MemorySpillStore

SCHEMA = SchemaBuilder().add_int_field("id").add_string_field("state").build()
ROWS = [{"id": i, "state": ("WA", "OR", "CA")[i % 3]} for i in range(250)]


class ExampleMetadata(MetadataSource):
    """Catalog with two schemas; tables named 'partitioned' report partitions."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    @override
    def list_schemas(self) -> list[str]:
        return ["schema2", "schema1"]

    @override
    def list_tables(self, schema_name: str) -> list[TableName]:
        if self.fail:
            raise RuntimeError("catalog unavailable")
        return [TableName(schema_name, name) for name in ("table3", "table1", "table2")]

    @override
    def estimate_row_count(self, table: TableName) -> int:
        return len(ROWS)

    @override
    def get_partitions(self, allocator: BlockAllocator, table: TableName) -> tuple[Block, list[str]] | None:
        if table.table_name != "partitioned":
            return None
        schema = SchemaBuilder().add_string_field("state").build()
        block = allocator.allocate(schema)
        for state in ("WA", "OR", "CA"):
            block.append_row({"state": state})
        return block, ["state"]


class ExampleRecords(RecordSource):
    """Serve ROWS, honoring offset/limit split properties."""

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = ROWS if rows is None else rows

    @override
    def read_with_constraint(
        self,
        spiller: BlockSpiller,
        request: ReadRecordsRequest,
        liveness: Callable[[], bool],
    ) -> None:
        offset = int(request.split.get_property(OFFSET_PROPERTY, "0") or 0)
        limit = request.split.get_property("limit")
        end = offset + int(limit) if limit else len(self.rows)
        for row in self.rows[offset:end]:
            if not spiller.write_row(row) and spiller.cancelled:
                return


def _registry() -> SourceRegistry:
    registry = SourceRegistry()
    registry.register("example", metadata=ExampleMetadata(), records=ExampleRecords())
    return registry


def _metadata_service(registry: SourceRegistry | None = None) -> MetadataService:
    return MetadataService(registry or _registry(), SplitPlanner("spill-bucket", concurrency_limit=100))


def _record_service(store: MemorySpillStore, registry: SourceRegistry | None = None) -> RecordService:
    base_config = SpillConfig(
        spill_location=SpillLocation("spill-bucket", "athena-spill", directory=True),
        request_id="service",
        max_block_bytes=100_000,
        max_inline_block_bytes=100,
        num_spill_threads=0,
        retry_backoff_seconds=0,
    )
    return RecordService(registry or _registry(), store, base_config)


def _read_request(split: Split, **overrides: Any) -> ReadRecordsRequest:
    settings: dict[str, Any] = {
        "catalog": "example",
        "query_id": "query-1",
        "table": split.table,
        "schema": SCHEMA,
        "split": split,
    }
    settings.update(overrides)
    return ReadRecordsRequest(**settings)


def _splits(table: str = "orders") -> list[Split]:
    request = GetSplitsRequest("example", "query-1", TableName("sales", table))
    return _metadata_service().get_splits(request).splits


def test_registry() -> None:
    """Test registering and looking up connectors."""
    registry = SourceRegistry()
    metadata = ExampleMetadata()
    registry.register("meta-only", metadata=metadata)
    registry.register("records-only", records=ExampleRecords())

    assert registry.catalogs() == ["meta-only", "records-only"]
    assert registry.metadata_source("meta-only") is metadata

    with pytest.raises(CapabilityMismatch, match="No record source"):
        registry.record_source("meta-only")
    with pytest.raises(CapabilityMismatch, match="No metadata source"):
        registry.metadata_source("unknown")
    with pytest.raises(ValueError):
        registry.register("empty")


def test_metadata_source_is_abstract() -> None:
    """Test that MetadataSource and RecordSource cannot be instantiated."""
    with pytest.raises(TypeError):
        MetadataSource()  # type: ignore[abstract]
    with pytest.raises(TypeError):
        RecordSource()  # type: ignore[abstract]


def test_list_schemas() -> None:
    """Test listing schemas in one unlimited page."""
    response = _metadata_service().list_schemas("example")

    assert response.items == ["schema1", "schema2"]
    assert response.done


def test_list_tables_in_pages() -> None:
    """Test listing three tables two at a time."""
    service = _metadata_service()

    first = service.list_tables("example", "schema1", ListRequest(page_size=2))
    assert [table.table_name for table in first.items] == ["table1", "table2"]
    assert first.next_token == "table3"

    second = service.list_tables("example", "schema1", ListRequest(page_size=2, continuation_token="table3"))
    assert second.items == [TableName("schema1", "table3")]
    assert second.next_token is None


def test_list_tables_with_iter_pages() -> None:
    """Test following tokens through the service."""
    service = _metadata_service()

    pages = list(iter_pages(lambda request: service.list_tables("example", "schema1", request), page_size=1))

    assert [page.items[0].table_name for page in pages] == ["table1", "table2", "table3"]


def test_listing_errors_propagate() -> None:
    """Test that a failing catalog surfaces its error instead of an empty page."""
    registry = SourceRegistry()
    registry.register("broken", metadata=ExampleMetadata(fail=True))

    with pytest.raises(RuntimeError, match="catalog unavailable"):
        _metadata_service(registry).list_tables("broken", "schema1")


def test_listing_unknown_catalog() -> None:
    """Test listing a catalog nobody registered."""
    with pytest.raises(CapabilityMismatch):
        _metadata_service().list_schemas("unknown")


def test_get_splits_by_offset() -> None:
    """Test that unpartitioned tables are split by row offsets."""
    splits = _splits()

    assert [split.get_property(OFFSET_PROPERTY) for split in splits] == ["0", "100", "200"]


def test_get_splits_by_partition() -> None:
    """Test that partitioned tables get one split per partition."""
    splits = _splits("partitioned")

    assert [split.get_property("state") for split in splits] == ["WA", "OR", "CA"]


def test_read_small_split_inline() -> None:
    """Test that a small split comes back inline and outlives the request allocator."""
    store = MemorySpillStore()
    registry = SourceRegistry()
    registry.register("example", records=ExampleRecords(ROWS[:2]))
    split = Split(TableName("sales", "orders"))

    result = _record_service(store, registry).read_records(_read_request(split))

    assert result.is_inline
    assert result.inline_block is not None
    assert not result.inline_block.released
    assert list(result.inline_block.rows()) == ROWS[:2]
    assert store.objects == {}


def test_read_split_spills_under_split_location() -> None:
    """Test that a large split is spilled below its own location with its own key."""
    store = MemorySpillStore()
    split = _splits()[1]

    limit = Block(SCHEMA).framing_bytes + AesGcmBlockCrypto.overhead + 512

    result = _record_service(store).read_records(_read_request(split, max_block_bytes=limit))

    assert result.inline_block is None
    assert len(result.spilled) > 1
    for spilled in result.spilled:
        assert spilled.location.key.startswith(f"{split.spill_location.key}/query-1/")
        assert spilled.encryption_key == split.encryption_key
    assert list(SpillReader(store).iter_rows(result)) == ROWS[100:200]


def test_read_records_applies_constraints() -> None:
    """Test that request constraints filter rows."""
    store = MemorySpillStore()
    split = _splits()[0]
    constraints = ConstraintEvaluator({"state": EquatableValueSet(["WA"])})

    result = _record_service(store).read_records(_read_request(split, constraints=constraints))

    rows = list(SpillReader(store).iter_rows(result))
    assert rows == [row for row in ROWS[:100] if row["state"] == "WA"]
    assert result.rows_rejected == 100 - len(rows)


def test_read_records_cancelled() -> None:
    """Test reading a split for a query that already finished."""
    result = _record_service(MemorySpillStore()).read_records(
        _read_request(_splits()[0]), liveness=lambda: False
    )

    assert result.cancelled
    assert result.rows_written == 0


def test_read_records_bad_rows() -> None:
    """Test that a connector producing mistyped rows fails the read."""
    registry = SourceRegistry()
    registry.register("example", records=ExampleRecords([{"id": "one", "state": "WA"}]))

    with pytest.raises(InvalidRowData):
        _record_service(MemorySpillStore(), registry).read_records(_read_request(Split(TableName("sales", "orders"))))


def test_read_records_unknown_catalog() -> None:
    """Test reading from a catalog without a record source."""
    split = Split(TableName("sales", "orders"))

    with pytest.raises(CapabilityMismatch):
        _record_service(MemorySpillStore()).read_records(_read_request(split, catalog="unknown"))


def test_config_for_request() -> None:
    """Test that per-request settings override the service defaults."""
    split = _splits()[0]
    service = _record_service(MemorySpillStore())

    config = service.config_for(_read_request(split, max_inline_block_bytes=10))

    assert config.request_id == "query-1"
    assert config.spill_location == split.spill_location
    assert config.encryption_key == split.encryption_key
    assert config.max_inline_block_bytes == 10
    assert config.max_block_bytes == 100_000


def test_unlocated_splits_spill_to_distinct_keys() -> None:
    """Test that splits without a pre-assigned location never overwrite each other."""
    store = MemorySpillStore()
    service = _record_service(store)
    table = TableName("sales", "orders")
    limit = Block(SCHEMA).framing_bytes + 512
    first = Split(table, {OFFSET_PROPERTY: "0", "limit": "100"})
    second = Split(table, {OFFSET_PROPERTY: "100", "limit": "100"})

    first_result = service.read_records(_read_request(first, max_block_bytes=limit))
    second_result = service.read_records(_read_request(second, max_block_bytes=limit))

    first_keys = {spilled.location.key for spilled in first_result.spilled}
    second_keys = {spilled.location.key for spilled in second_result.spilled}
    assert len(first_keys) > 1
    assert first_keys.isdisjoint(second_keys)
    assert all(key.startswith("athena-spill/query-1-") for key in first_keys | second_keys)

    reader = SpillReader(store)
    assert list(reader.iter_rows(first_result)) == ROWS[:100]
    assert list(reader.iter_rows(second_result)) == ROWS[100:200]

    config = service.config_for(_read_request(first))
    assert config.request_id == service.config_for(_read_request(Split(table, dict(first.properties)))).request_id
    assert config.request_id != service.config_for(_read_request(second)).request_id


def test_schema_mismatch_is_a_capability_error() -> None:
    """Test that unsupported column types fail before any row is read."""
    schema = pa.schema([pa.field("tags", pa.list_(pa.string()))])

    with pytest.raises(CapabilityMismatch):
        _record_service(MemorySpillStore()).read_records(
            _read_request(Split(TableName("sales", "orders")), schema=schema)
        )
