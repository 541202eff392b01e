"""Example: Spilling a scan to AWS S3."""

from spillway import BlockAllocator, BlockSpiller, SpillConfig, SpillReader
from spillway.crypto import LocalKeyFactory
from spillway.schema import SchemaBuilder
from spillway.spiller import QueryStatusChecker
from spillway.storage import S3SpillStore

schema = SchemaBuilder().add_bigint_field("id").add_string_field("payload").build()

# Bucket and prefix come from options or SPILL_BUCKET / SPILL_PREFIX
config = SpillConfig.from_options(
    {"spill_bucket": "my-spill-bucket", "max_block_bytes": str(1024 * 1024)},
    request_id="example-query",
    encryption_key=LocalKeyFactory().create(),
)

# Or use an explicit client for more control
# import boto3
# s3_client = boto3.client("s3", region_name="us-east-1")
# store = S3SpillStore(client=s3_client)
store = S3SpillStore(region="us-east-1")

# Stop early once the query is gone; here it never is
liveness = QueryStatusChecker(lambda: True, min_interval_seconds=1.0)

with BlockAllocator() as allocator:
    with BlockSpiller(store, config, allocator, schema, liveness=liveness) as spiller:
        spiller.write_rows({"id": i, "payload": "x" * 100} for i in range(100_000))
        result = spiller.close()

print(f"Spilled {len(result.spilled)} blocks, {result.rows_written} rows")

reader = SpillReader(store)
print("First block as CSV:")
first = next(reader.iter_blocks(result))
for line in list(reader.iter_csv(first))[:5]:
    print(line.decode("utf-8"), end="")
