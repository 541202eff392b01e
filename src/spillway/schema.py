"""Schema helpers: building Arrow schemas for Blocks and checking their column types."""

import logging
from typing import Any

import pyarrow as pa

from spillway.exceptions import CapabilityMismatch

logger = logging.getLogger(__name__)

_SUPPORTED_TYPE_CHECKS = (
    pa.types.is_integer,
    pa.types.is_floating,
    pa.types.is_boolean,
    pa.types.is_string,
    pa.types.is_large_string,
    pa.types.is_binary,
    pa.types.is_large_binary,
    pa.types.is_date32,
    pa.types.is_timestamp,
    pa.types.is_decimal128,
)


def is_supported_type(arrow_type: pa.DataType) -> bool:
    """Return True if Blocks can hold a column of this Arrow type."""
    return any(check(arrow_type) for check in _SUPPORTED_TYPE_CHECKS)


def validate_schema(schema: pa.Schema) -> pa.Schema:
    """
    Check that every field of a schema can be stored in a Block.

    Args:
        schema: Arrow schema shared by all Blocks of one scan.

    Returns:
        pa.Schema: The same schema, for chaining.

    Raises:
        CapabilityMismatch: If a field name repeats or a field type is unsupported.
    """
    seen: set[str] = set()
    for field in schema:
        if field.name in seen:
            raise CapabilityMismatch(f"Duplicate field name in schema: {field.name}")
        seen.add(field.name)
        if not is_supported_type(field.type):
            raise CapabilityMismatch(f"Unsupported type {field.type} for field {field.name}")
    return schema


class SchemaBuilder:
    """
    Fluent builder for Block schemas.

    Example:
        >>> schema = (
        ...     SchemaBuilder()
        ...     .add_int_field("year")
        ...     .add_string_field("name")
        ...     .add_metadata("dataFormat", "csv")
        ...     .build()
        ... )
    """

    def __init__(self) -> None:
        self._fields: list[pa.Field] = []
        self._metadata: dict[str, str] = {}

    def add_field(
        self,
        name: str,
        arrow_type: pa.DataType,
        nullable: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> "SchemaBuilder":
        """
        Append a field.

        Args:
            name: Column name, unique within the schema.
            arrow_type: Arrow type of the column.
            nullable: Whether the column admits nulls (default: True).
            metadata: Optional field metadata; values are stringified.
        """
        field_metadata = {str(k): str(v) for k, v in metadata.items()} if metadata else None
        self._fields.append(pa.field(name, arrow_type, nullable=nullable, metadata=field_metadata))
        return self

    def add_int_field(self, name: str, nullable: bool = True) -> "SchemaBuilder":
        return self.add_field(name, pa.int32(), nullable)

    def add_bigint_field(self, name: str, nullable: bool = True) -> "SchemaBuilder":
        return self.add_field(name, pa.int64(), nullable)

    def add_float_field(self, name: str, nullable: bool = True) -> "SchemaBuilder":
        return self.add_field(name, pa.float64(), nullable)

    def add_string_field(self, name: str, nullable: bool = True) -> "SchemaBuilder":
        return self.add_field(name, pa.string(), nullable)

    def add_bool_field(self, name: str, nullable: bool = True) -> "SchemaBuilder":
        return self.add_field(name, pa.bool_(), nullable)

    def add_metadata(self, key: str, value: str) -> "SchemaBuilder":
        """Attach a schema-level metadata entry."""
        self._metadata[key] = value
        return self

    def build(self) -> pa.Schema:
        """
        Build and validate the schema.

        Raises:
            CapabilityMismatch: If a field is duplicated or its type unsupported.
        """
        schema = pa.schema(self._fields, metadata=self._metadata or None)
        logger.debug("Built schema with %d fields", len(self._fields))
        return validate_schema(schema)
