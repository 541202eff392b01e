"""Read spilled Blocks back from storage, for coordinators and debugging."""

from collections.abc import Iterator
import csv
import io
import logging
from pathlib import Path
from typing import Any, BinaryIO, TextIO
from urllib.parse import urlparse

from spillway.block import Block
from spillway.crypto import EncryptionKey, crypto_for
from spillway.spiller import SpillResult
from spillway.storage.base import SpillLocation, SpillStore
from spillway.storage.local import LocalSpillStore
from spillway.storage.s3 import S3SpillStore

logger = logging.getLogger(__name__)


class SpillReader:
    """
    Fetch, decrypt and decode spilled Blocks.

    Accepts a SpillStore, or a string naming one: ``s3://`` selects S3, any
    other string is the root directory of a local store.
    """

    def __init__(self, source: str | SpillStore, **store_options: Any) -> None:
        """
        Initialize the reader.

        Args:
            source: SpillStore instance, ``s3://`` URI, or local store root path.
            **store_options: Options for the store built from a string:
                - For S3: client, region
                - For local stores: (none)

        Raises:
            ImportError: If boto3 is required but not installed.
        """
        if isinstance(source, str):
            self.store = self._create_store(source, store_options)
        else:
            self.store = source

        logger.info("SpillReader initialized (store=%s)", self.store.get_metadata().get("store_type"))

    @staticmethod
    def _create_store(source_str: str, options: dict[str, Any]) -> SpillStore:
        """
        Create a SpillStore from a string.

        Args:
            source_str: ``s3://...`` for S3, otherwise a local directory.
            options: Store-specific options.

        Returns:
            SpillStore: Appropriate store implementation.
        """
        parsed = urlparse(source_str)

        if parsed.scheme == "s3":
            logger.info("Creating S3SpillStore for %s", source_str)
            return S3SpillStore(**{k: v for k, v in options.items() if k in ("client", "region")})

        logger.info("Creating LocalSpillStore for %s", source_str)
        return LocalSpillStore(source_str)

    def read_block(
        self, location: SpillLocation | str, encryption_key: EncryptionKey | None = None
    ) -> Block:
        """
        Read one spilled Block.

        Args:
            location: Location (or ``s3://bucket/key`` URI) of the spilled object.
            encryption_key: Key the Block was spilled with; None for plaintext payloads.

        Returns:
            Block: A sealed Block not tracked by any allocator.

        Raises:
            OSError: If the payload cannot be read.
            DecryptionError: If the key does not match the payload.
        """
        if isinstance(location, str):
            location = SpillLocation.from_uri(location)

        payload = self.store.read(location)
        block = Block.from_bytes(crypto_for(encryption_key).decrypt(payload))
        logger.debug("Read block of %d rows from %s", block.row_count, location.uri)
        return block

    def iter_blocks(self, result: SpillResult) -> Iterator[Block]:
        """Yield the Blocks of a scan result in write order."""
        if result.inline_block is not None:
            yield result.inline_block
        for spilled in sorted(result.spilled, key=lambda s: s.sequence):
            yield self.read_block(spilled.location, spilled.encryption_key)

    def iter_rows(self, result: SpillResult) -> Iterator[dict[str, Any]]:
        """Yield every row of a scan result in write order."""
        for block in self.iter_blocks(result):
            yield from block.rows()

    @staticmethod
    def _row_to_bytes(row: list[Any]) -> bytes:
        """
        Convert a list of row values into a CSV byte chunk.

        Args:
            row: List of cell values; None becomes an empty field.

        Returns:
            bytes: CSV-formatted row as bytes.
        """
        values = [str(value) if value is not None else "" for value in row]

        output = io.StringIO()
        writer = csv.writer(output, delimiter=",", quoting=csv.QUOTE_MINIMAL)
        writer.writerow(values)

        return output.getvalue().encode("utf-8")

    def iter_csv(self, block: Block) -> Iterator[bytes]:
        """Yield a header line then one CSV line per row of a Block."""
        names = block.schema.names
        yield self._row_to_bytes(names)
        for row in block.rows():
            yield self._row_to_bytes([row[name] for name in names])

    def to_csv(
        self,
        location: SpillLocation | str,
        encryption_key: EncryptionKey | None,
        output: str | BinaryIO | TextIO,
    ) -> int:
        """
        Write one spilled Block as CSV.

        Args:
            location: Location of the spilled object.
            encryption_key: Key the Block was spilled with.
            output: File path, binary file object or text file object.

        Returns:
            int: Number of data rows written.

        Raises:
            IOError: If the Block cannot be read or the output cannot be written.
        """
        block = self.read_block(location, encryption_key)
        try:
            if isinstance(output, str):
                with Path(output).open("wb") as f:
                    for line in self.iter_csv(block):
                        f.write(line)
            elif isinstance(output, (io.RawIOBase, io.BufferedIOBase)):
                for line in self.iter_csv(block):
                    output.write(line)
            else:
                for line in self.iter_csv(block):
                    output.write(line.decode("utf-8"))
        except OSError as e:
            logger.exception("Error writing CSV: %s", e)
            raise OSError(f"Failed to write CSV: {e}") from e

        logger.info("CSV conversion complete (%d rows)", block.row_count)
        return block.row_count
