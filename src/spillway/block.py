"""
Columnar row batches ("Blocks").

A Block buffers rows column by column for one Arrow schema and tracks the size
its column buffers take once serialized, so callers can seal it before it grows
past a byte budget.

SIZE ACCOUNTING
===============

Arrow lays every column out as up to three buffers, each padded to 8 bytes in
the IPC body:

    validity bitmap   ceil(rows / 8)
    offsets           (rows + 1) * 4    (8 for large_string / large_binary)
    data              rows * byte_width (fixed width)
                      ceil(rows / 8)    (bool)
                      sum(len(value))   (string / binary)

``Block.size_bytes`` is the sum of those padded buffers. It always counts the
validity bitmap, so it is an upper bound of what pyarrow reports as the
record batch's ``nbytes``.

A serialized Block is an IPC stream: the schema message, one record batch
message and the end-of-stream marker. Everything but the body depends only on
the schema (the batch header lists one node per column and one entry per
buffer), so ``Block.framing_bytes`` measures it once per schema from an empty
batch, plus room for the header fields an empty batch leaves out.
``Block.serialized_size_bytes`` adds the two and bounds ``len(serialize())``.
"""

from collections.abc import Iterator, Mapping, Sequence
import datetime
import decimal
import functools
import logging
import threading
from typing import TYPE_CHECKING, Any

import pyarrow as pa

from spillway.exceptions import InvalidRowData
from spillway.schema import validate_schema

if TYPE_CHECKING:
    from spillway.allocator import BlockAllocator

logger = logging.getLogger(__name__)

_PADDING = 8
# Batch header fields an empty batch omits (row count, body length) and their padding
_HEADER_SLACK = 64


def _pad(size: int) -> int:
    return (size + _PADDING - 1) // _PADDING * _PADDING


def _bitmap_bytes(rows: int) -> int:
    return _pad((rows + 7) // 8)


@functools.lru_cache(maxsize=128)
def _framing_bytes(serialized_schema: bytes) -> int:
    schema = pa.ipc.read_schema(pa.py_buffer(serialized_schema))
    empty = pa.RecordBatch.from_arrays([pa.array([], type=field.type) for field in schema], schema=schema)
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, schema) as writer:
        writer.write_batch(empty)
    return sink.getvalue().size + _HEADER_SLACK


class _Column:
    """Value buffer plus size bookkeeping for one field."""

    __slots__ = ("field", "values", "var_bytes", "byte_width", "offset_width", "is_bool")

    def __init__(self, field: pa.Field) -> None:
        self.field = field
        self.values: list[Any] = []
        self.var_bytes = 0
        arrow_type = field.type
        self.is_bool = pa.types.is_boolean(arrow_type)
        if pa.types.is_large_string(arrow_type) or pa.types.is_large_binary(arrow_type):
            self.byte_width, self.offset_width = 0, 8
        elif pa.types.is_string(arrow_type) or pa.types.is_binary(arrow_type):
            self.byte_width, self.offset_width = 0, 4
        elif self.is_bool:
            self.byte_width, self.offset_width = 0, 0
        else:
            self.byte_width, self.offset_width = arrow_type.bit_width // 8, 0

    def buffer_size(self, rows: int, var_bytes: int) -> int:
        size = _bitmap_bytes(rows)
        if self.is_bool:
            return size + _bitmap_bytes(rows)
        if self.offset_width:
            return size + _pad((rows + 1) * self.offset_width) + _pad(var_bytes)
        return size + _pad(rows * self.byte_width)

    def normalize(self, value: Any) -> tuple[Any, int]:
        """Check one value against the field type; return it with its variable-width length."""
        field = self.field
        if value is None:
            if not field.nullable:
                raise InvalidRowData(f"Column {field.name} is not nullable")
            return None, 0

        arrow_type = field.type
        if pa.types.is_integer(arrow_type):
            if isinstance(value, bool) or not isinstance(value, int):
                raise self._mismatch(value)
            bits = arrow_type.bit_width
            if pa.types.is_signed_integer(arrow_type):
                low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
            else:
                low, high = 0, (1 << bits) - 1
            if not low <= value <= high:
                raise InvalidRowData(f"Value {value} out of range for {arrow_type} column {field.name}")
            return value, 0
        if pa.types.is_floating(arrow_type):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self._mismatch(value)
            return float(value), 0
        if self.is_bool:
            if not isinstance(value, bool):
                raise self._mismatch(value)
            return value, 0
        if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
            if not isinstance(value, str):
                raise self._mismatch(value)
            return value, len(value.encode("utf-8"))
        if pa.types.is_binary(arrow_type) or pa.types.is_large_binary(arrow_type):
            if not isinstance(value, (bytes, bytearray, memoryview)):
                raise self._mismatch(value)
            data = bytes(value)
            return data, len(data)
        if pa.types.is_timestamp(arrow_type):
            if not isinstance(value, datetime.datetime):
                raise self._mismatch(value)
            return value, 0
        if pa.types.is_date32(arrow_type):
            if isinstance(value, datetime.datetime) or not isinstance(value, datetime.date):
                raise self._mismatch(value)
            return value, 0
        if pa.types.is_decimal128(arrow_type):
            if isinstance(value, bool) or not isinstance(value, (decimal.Decimal, int)):
                raise self._mismatch(value)
            return decimal.Decimal(value), 0
        raise InvalidRowData(f"Unsupported type {arrow_type} for column {field.name}")

    def _mismatch(self, value: Any) -> InvalidRowData:
        return InvalidRowData(
            f"Column {self.field.name} expects {self.field.type}, got {type(value).__name__}"
        )


class Block:
    """
    A bounded columnar batch of rows sharing one schema.

    Blocks are mutable while being filled and read-only once sealed. Only one
    component owns a Block at a time; its owner releases it (or the allocator
    that created it does on close).
    """

    def __init__(self, schema: pa.Schema, allocator: "BlockAllocator | None" = None) -> None:
        """
        Initialize an empty Block.

        Args:
            schema: Arrow schema of the Block.
            allocator: Allocator charged for the Block's bytes. Blocks are normally
                created through ``BlockAllocator.allocate`` which passes itself here.
        """
        self._schema = validate_schema(schema)
        self._columns = {field.name: _Column(field) for field in schema}
        self._allocator = allocator
        self._row_count = 0
        self._sealed = False
        self._released = False
        self._lock = threading.Lock()
        self._framing_bytes = _framing_bytes(self._schema.serialize().to_pybytes())
        self._size_bytes = self._compute_size(0, {name: 0 for name in self._columns})
        if allocator is not None:
            allocator._register(self)

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def row_count(self) -> int:
        return self._row_count

    @property
    def size_bytes(self) -> int:
        """Serialized column-buffer size of the Block in bytes."""
        return self._size_bytes

    @property
    def framing_bytes(self) -> int:
        """Upper bound of the IPC stream bytes around the column buffers, fixed per schema."""
        return self._framing_bytes

    @property
    def serialized_size_bytes(self) -> int:
        """Upper bound of ``len(serialize())``."""
        return self._framing_bytes + self._size_bytes

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def released(self) -> bool:
        return self._released

    def _compute_size(self, rows: int, var_bytes: Mapping[str, int]) -> int:
        return sum(column.buffer_size(rows, var_bytes[name]) for name, column in self._columns.items())

    def _check_writable(self) -> None:
        if self._released:
            raise RuntimeError("Block has been released")
        if self._sealed:
            raise RuntimeError("Block is sealed and can no longer be written")

    def _charge(self, new_size: int) -> None:
        if self._allocator is not None:
            self._allocator._charge(self, new_size - self._size_bytes)
        self._size_bytes = new_size

    def append_row(self, row: Mapping[str, Any], max_bytes: int | None = None) -> bool:
        """
        Append one row.

        Args:
            row: Column name to value. Columns missing from the mapping are null.
            max_bytes: Optional budget; if the row would push ``size_bytes`` past it
                the Block is left untouched.

        Returns:
            bool: True if the row was written, False if it did not fit ``max_bytes``.

        Raises:
            InvalidRowData: If a value does not match its column or a column is unknown.
            OutOfMemory: If the owning allocator cannot grant the extra bytes.
            RuntimeError: If the Block is sealed or released.
        """
        self._check_writable()
        unknown = set(row) - self._columns.keys()
        if unknown:
            raise InvalidRowData(f"Unknown columns for schema: {sorted(unknown)}")

        normalized: dict[str, Any] = {}
        var_bytes: dict[str, int] = {}
        for name, column in self._columns.items():
            value, length = column.normalize(row.get(name))
            normalized[name] = value
            var_bytes[name] = column.var_bytes + length

        new_size = self._compute_size(self._row_count + 1, var_bytes)
        if max_bytes is not None and new_size > max_bytes:
            return False

        self._charge(new_size)
        for name, column in self._columns.items():
            column.values.append(normalized[name])
            column.var_bytes = var_bytes[name]
        self._row_count += 1
        return True

    def write_columns(self, columns: Mapping[str, Sequence[Any]]) -> None:
        """
        Bulk-append whole columns.

        Args:
            columns: Column name to values; every schema column must be present and
                all sequences must have the same length.

        Raises:
            InvalidRowData: If columns are missing, unknown, uneven or mistyped.
        """
        self._check_writable()
        if set(columns) != self._columns.keys():
            raise InvalidRowData(
                f"Bulk write must cover exactly the schema columns {list(self._columns)}"
            )
        lengths = {len(values) for values in columns.values()}
        if len(lengths) > 1:
            raise InvalidRowData(f"Bulk write columns have uneven lengths: {sorted(lengths)}")
        added = lengths.pop() if lengths else 0

        staged: dict[str, list[Any]] = {}
        var_bytes: dict[str, int] = {}
        for name, column in self._columns.items():
            total = column.var_bytes
            staged[name] = []
            for value in columns[name]:
                normalized, length = column.normalize(value)
                staged[name].append(normalized)
                total += length
            var_bytes[name] = total

        self._charge(self._compute_size(self._row_count + added, var_bytes))
        for name, column in self._columns.items():
            column.values.extend(staged[name])
            column.var_bytes = var_bytes[name]
        self._row_count += added

    def get_value(self, column: str, row: int) -> Any:
        if self._released:
            raise RuntimeError("Block has been released")
        if not 0 <= row < self._row_count:
            raise IndexError(f"Row {row} out of range for Block with {self._row_count} rows")
        return self._columns[column].values[row]

    def rows(self) -> Iterator[dict[str, Any]]:
        """Yield rows as dictionaries in write order."""
        if self._released:
            raise RuntimeError("Block has been released")
        names = list(self._columns)
        for index in range(self._row_count):
            yield {name: self._columns[name].values[index] for name in names}

    def seal(self) -> "Block":
        """Mark the Block read-only. Sealing twice is harmless."""
        if self._released:
            raise RuntimeError("Block has been released")
        self._sealed = True
        return self

    def to_record_batch(self) -> pa.RecordBatch:
        if self._released:
            raise RuntimeError("Block has been released")
        arrays = [pa.array(column.values, type=column.field.type) for column in self._columns.values()]
        return pa.RecordBatch.from_arrays(arrays, schema=self._schema)

    def serialize(self) -> bytes:
        """Serialize the Block as an Arrow IPC stream (schema plus one record batch)."""
        sink = pa.BufferOutputStream()
        with pa.ipc.new_stream(sink, self._schema) as writer:
            writer.write_batch(self.to_record_batch())
        return sink.getvalue().to_pybytes()

    @classmethod
    def from_record_batch(
        cls, batch: pa.RecordBatch, allocator: "BlockAllocator | None" = None
    ) -> "Block":
        """Build a sealed Block holding the rows of an Arrow record batch."""
        block = cls(batch.schema, allocator=allocator)
        block.write_columns({name: batch.column(name).to_pylist() for name in batch.schema.names})
        return block.seal()

    @classmethod
    def from_bytes(cls, data: bytes, allocator: "BlockAllocator | None" = None) -> "Block":
        """
        Rebuild a sealed Block from ``serialize()`` output.

        Raises:
            InvalidRowData: If the payload is not an Arrow IPC stream.
        """
        try:
            table = pa.ipc.open_stream(pa.BufferReader(data)).read_all()
        except pa.ArrowInvalid as e:
            raise InvalidRowData(f"Payload is not a serialized Block: {e}") from e
        batch = table.combine_chunks().to_batches()
        if not batch:
            block = cls(table.schema, allocator=allocator)
            return block.seal()
        return cls.from_record_batch(batch[0], allocator=allocator)

    def release(self) -> None:
        """
        Free the column buffers and return the bytes to the allocator.

        Safe to call from several threads; only the first call has an effect.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
        for column in self._columns.values():
            column.values = []
        if self._allocator is not None:
            self._allocator._forget(self)
        logger.debug("Released block with %d rows (%d bytes)", self._row_count, self._size_bytes)

    def __repr__(self) -> str:
        return (
            f"Block(rows={self._row_count}, size_bytes={self._size_bytes}, "
            f"sealed={self._sealed}, released={self._released})"
        )
