"""Paged metadata listings and split planning dispatched to registered connectors."""

import logging

from spillway.allocator import BlockAllocator
from spillway.pagination import ListRequest, ListResponse, paginate
from spillway.sources import SourceRegistry
from spillway.splits import GetSplitsRequest, GetSplitsResponse, SplitPlanner, TableName

logger = logging.getLogger(__name__)


class MetadataService:
    """
    Serve schema/table listings and split requests for every registered catalog.

    Listing tokens are the identifier of the next unreturned item (schema name
    or table name); split tokens are issued by the SplitPlanner.
    """

    def __init__(self, registry: SourceRegistry, planner: SplitPlanner) -> None:
        self.registry = registry
        self.planner = planner

    def list_schemas(self, catalog: str, request: ListRequest | None = None) -> ListResponse[str]:
        """
        List one page of schema names.

        Raises:
            CapabilityMismatch: Unknown catalog, bad page size or foreign token.
        """
        request = request or ListRequest()
        logger.info("list_schemas called with catalog: %s", catalog)
        source = self.registry.metadata_source(catalog)
        return paginate(source.list_schemas(), request)

    def list_tables(
        self, catalog: str, schema_name: str, request: ListRequest | None = None
    ) -> ListResponse[TableName]:
        """
        List one page of tables of a schema.

        Raises:
            CapabilityMismatch: Unknown catalog, bad page size or foreign token.
        """
        request = request or ListRequest()
        logger.info("list_tables called with request %s:%s", catalog, schema_name)
        source = self.registry.metadata_source(catalog)
        return paginate(source.list_tables(schema_name), request, key=lambda table: table.table_name)

    def get_splits(self, request: GetSplitsRequest) -> GetSplitsResponse:
        """
        Plan one page of splits for a table scan.

        Partitioned tables get one split per partition; others are divided by
        row offsets using the connector's row estimate.
        """
        source = self.registry.metadata_source(request.catalog)
        with BlockAllocator() as allocator:
            partitioned = source.get_partitions(allocator, request.table)
            if partitioned is not None:
                partitions, columns = partitioned
                return self.planner.plan_partition_splits(request, partitions, columns)
        return self.planner.plan_offset_splits(request, source.estimate_row_count(request.table))
