"""Request-scoped arena that creates Blocks and bounds their total size."""

import logging
import threading

import pyarrow as pa

from spillway.block import Block
from spillway.exceptions import OutOfMemory

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1024 * 1024 * 1024


class BlockAllocator:
    """
    Create and track Blocks for one request.

    Every Block the allocator hands out is charged against ``max_bytes`` as it
    grows; a request that would cross the ceiling fails with OutOfMemory.
    Closing the allocator releases whatever Blocks are still alive, so use it
    as a context manager:

        >>> with BlockAllocator(max_bytes=64 * 1024 * 1024) as allocator:
        ...     block = allocator.allocate(schema)
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        """
        Initialize the allocator.

        Args:
            max_bytes: Ceiling for the summed size of all live Blocks (default: 1GB).

        Raises:
            ValueError: If max_bytes is not positive.
        """
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")

        self.max_bytes = max_bytes
        self._lock = threading.Lock()
        self._blocks: dict[int, Block] = {}
        self._charged: dict[int, int] = {}
        self._used = 0
        self._closed = False

        logger.debug("BlockAllocator initialized (max_bytes=%d)", max_bytes)

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return self._used

    @property
    def live_blocks(self) -> int:
        with self._lock:
            return len(self._blocks)

    @property
    def closed(self) -> bool:
        return self._closed

    def allocate(self, schema: pa.Schema) -> Block:
        """
        Create an empty Block bound to this allocator.

        Args:
            schema: Arrow schema for the Block.

        Returns:
            Block: A new, empty, writable Block.

        Raises:
            OutOfMemory: If even the empty Block does not fit under the ceiling.
            RuntimeError: If the allocator has been closed.
        """
        return Block(schema, allocator=self)

    def _register(self, block: Block) -> None:
        size = block.size_bytes
        with self._lock:
            if self._closed:
                raise RuntimeError("BlockAllocator is closed")
            if self._used + size > self.max_bytes:
                raise OutOfMemory(size, self._used, self.max_bytes)
            self._blocks[id(block)] = block
            self._charged[id(block)] = size
            self._used += size

    def _charge(self, block: Block, delta: int) -> None:
        with self._lock:
            key = id(block)
            if key not in self._blocks:
                raise RuntimeError("Block is not tracked by this allocator")
            if delta > 0 and self._used + delta > self.max_bytes:
                raise OutOfMemory(delta, self._used, self.max_bytes)
            self._used += delta
            self._charged[key] += delta

    def _forget(self, block: Block) -> None:
        with self._lock:
            key = id(block)
            self._blocks.pop(key, None)
            self._used -= self._charged.pop(key, 0)

    def detach(self, block: Block) -> None:
        """
        Hand a Block over to the caller.

        The allocator stops tracking it, its bytes no longer count against the
        ceiling, and closing the allocator leaves it alone.
        """
        self._forget(block)
        block._allocator = None

    def close(self) -> None:
        """Release every Block still tracked. Calling close again does nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            outstanding = list(self._blocks.values())

        for block in outstanding:
            block.release()

        logger.debug("BlockAllocator closed, released %d outstanding blocks", len(outstanding))

    def __enter__(self) -> "BlockAllocator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
