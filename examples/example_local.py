"""Example: Spilling a scan to a local directory and reading it back."""

import tempfile

from spillway import BlockAllocator, BlockSpiller, SpillConfig, SpillReader
from spillway.crypto import LocalKeyFactory
from spillway.schema import SchemaBuilder
from spillway.storage import LocalSpillStore, SpillLocation

schema = SchemaBuilder().add_int_field("year").add_string_field("city").add_float_field("sales").build()

with tempfile.TemporaryDirectory() as root:
    config = SpillConfig(
        spill_location=SpillLocation("spill-bucket", "athena-spill", directory=True),
        request_id="example-query",
        encryption_key=LocalKeyFactory().create(),
        max_block_bytes=4096,
        max_inline_block_bytes=1024,
    )
    store = LocalSpillStore(root)

    with BlockAllocator() as allocator:
        spiller = BlockSpiller(store, config, allocator, schema)
        for i in range(1000):
            spiller.write_row({"year": 2000 + i % 20, "city": f"city-{i % 37}", "sales": i * 1.5})
        result = spiller.close()

    print(f"Rows written: {result.rows_written}")
    print(f"Inline: {result.is_inline}, spilled blocks: {len(result.spilled)}")
    for spilled in result.spilled[:5]:
        print(f"  #{spilled.sequence}: {spilled.location.uri} ({spilled.row_count} rows)")

    # Read everything back in write order
    reader = SpillReader(store)
    for i, row in enumerate(reader.iter_rows(result), 1):
        if i > 10:
            print("...")
            break
        print(f"Row {i}: {row}")
