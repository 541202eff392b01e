"""
Streaming row sink that overflows full Blocks to encrypted external storage.

DATA FLOW
=========

    rows -> ConstraintEvaluator -> current Block --(full)--> seal -> spill task
                                        |                          |
                                   (scan ends)           serialize, encrypt,
                                        |                write <prefix>/<request_id>/<seq>
                                        v
                        inline Block  or  final spill

Sequence numbers are handed out on the producer thread in the order Blocks
are sealed, before the spill task is dispatched. Readers reassemble a result
by ordering spilled Blocks by sequence number; storage completion order does
not matter.

With ``num_spill_threads == 0`` the producer writes each Block itself. With a
positive value the write runs on a thread pool, and at most that many spills
are in flight: the producer blocks on a semaphore until a worker frees up.
"""

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any

import pyarrow as pa

from spillway.allocator import BlockAllocator
from spillway.block import Block
from spillway.config import SpillConfig
from spillway.constraints import ConstraintEvaluator
from spillway.crypto import EncryptionKey, crypto_for
from spillway.exceptions import ErrorKind, InvalidRowData, SpillFailure, classify
from spillway.storage.base import SpillLocation, SpillStore

logger = logging.getLogger(__name__)

RowProducer = Mapping[str, Any] | Callable[[], Mapping[str, Any] | None]


@dataclass(frozen=True)
class SpilledBlock:
    """
    Where one Block of a scan was written and how to decrypt it.

    ``size_bytes`` bounds the stored payload: serialized Block plus encryption overhead.
    """

    sequence: int
    location: SpillLocation
    encryption_key: EncryptionKey | None
    row_count: int
    size_bytes: int


@dataclass
class SpillResult:
    """
    Terminal outcome of a scan.

    Either ``inline_block`` is set (small result, nothing spilled) or
    ``spilled`` lists every written Block in sequence order.
    """

    inline_block: Block | None = None
    spilled: list[SpilledBlock] = field(default_factory=list)
    rows_written: int = 0
    rows_rejected: int = 0
    cancelled: bool = False

    @property
    def is_inline(self) -> bool:
        return self.inline_block is not None and not self.spilled


class QueryStatusChecker:
    """
    Cached liveness probe for a running query.

    Calls ``is_running`` at most once per ``min_interval_seconds``. Once the
    probe reports the query finished the checker stays negative.
    """

    def __init__(
        self,
        is_running: Callable[[], bool],
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = is_running
        self._interval = min_interval_seconds
        self._clock = clock
        self._last_check: float | None = None
        self._running = True

    def is_query_running(self) -> bool:
        if not self._running:
            return False
        now = self._clock()
        if self._last_check is None or now - self._last_check >= self._interval:
            self._last_check = now
            try:
                self._running = bool(self._probe())
            except Exception as e:
                logger.warning("Query status probe failed, assuming query is running: %s", e)
        return self._running

    def __call__(self) -> bool:
        return self.is_query_running()


class BlockSpiller:
    """
    Fill Blocks with filtered rows and spill the ones that overflow.

    Example:
        >>> with BlockAllocator() as allocator:
        ...     spiller = BlockSpiller(store, config, allocator, schema)
        ...     for row in source_rows:
        ...         spiller.write_row(row)
        ...     result = spiller.close()
    """

    def __init__(
        self,
        store: SpillStore,
        config: SpillConfig,
        allocator: BlockAllocator,
        schema: pa.Schema,
        constraint_evaluator: ConstraintEvaluator | None = None,
        liveness: Callable[[], bool] | None = None,
    ) -> None:
        """
        Initialize the spiller and allocate its first Block.

        Args:
            store: Storage backend spilled payloads are written to.
            config: Spill settings for this scan.
            allocator: Allocator that owns every Block of the scan.
            schema: Schema of the rows.
            constraint_evaluator: Row filter (default: admit everything).
            liveness: Returns False once nobody will read the result anymore.

        Raises:
            ValueError: If max_block_bytes is too small for one serialized Block of the schema.
        """
        self.store = store
        self.config = config
        self.allocator = allocator
        self.schema = schema
        self.constraint_evaluator = constraint_evaluator or ConstraintEvaluator.empty()
        self._liveness = liveness
        self._crypto = crypto_for(config.encryption_key)
        if config.encryption_key is None:
            logger.warning("No encryption key configured, spilled blocks will not be encrypted")

        self._block: Block | None = allocator.allocate(schema)
        # Column-buffer bytes a Block may hold so its stored payload fits max_block_bytes
        self._block_budget = config.max_block_bytes - self._crypto.overhead - self._block.framing_bytes
        if self._block_budget < self._block.size_bytes:
            minimum = config.max_block_bytes - self._block_budget + self._block.size_bytes
            self._block.release()
            raise ValueError(
                f"max_block_bytes={config.max_block_bytes} cannot hold a serialized block "
                f"of this schema (needs at least {minimum} bytes)"
            )
        self._lock = threading.Lock()
        self._next_sequence = 0
        self._completed: dict[int, SpilledBlock] = {}
        self._failures: list[tuple[int, BaseException]] = []
        self._futures: list[Future[None]] = []
        self._rows_written = 0
        self._rows_rejected = 0
        self._cancelled = False
        self._result: SpillResult | None = None
        self._error: SpillFailure | None = None

        threads = config.num_spill_threads
        self._executor = (
            ThreadPoolExecutor(max_workers=threads, thread_name_prefix="spillway-spill")
            if threads > 0
            else None
        )
        self._slots = threading.BoundedSemaphore(threads) if threads > 0 else None

        logger.info(
            "BlockSpiller initialized (request=%s, location=%s, max_block_bytes=%d, "
            "max_inline_block_bytes=%d, spill_threads=%d)",
            config.request_id,
            config.spill_location.uri,
            config.max_block_bytes,
            config.max_inline_block_bytes,
            threads,
        )

    @property
    def block(self) -> Block | None:
        """The Block currently being filled (None once cancelled or closed)."""
        return self._block

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def spilled(self) -> bool:
        """Whether at least one Block has been handed to a spill task."""
        return self._next_sequence > 0

    def spilled_blocks(self) -> list[SpilledBlock]:
        """Blocks whose spill has completed so far, in sequence order."""
        with self._lock:
            return [self._completed[seq] for seq in sorted(self._completed)]

    def write_row(self, row_producer: RowProducer) -> bool:
        """
        Offer one row to the current Block.

        Args:
            row_producer: The row as a mapping, or a zero-argument callable
                returning one (or None when it has nothing to write).

        Returns:
            bool: True if the row was stored; False if the evaluator rejected it,
            the producer had nothing, or the scan is no longer live.

        Raises:
            InvalidRowData: If a value does not match the schema or the row alone
                is larger than ``max_block_bytes``.
            SpillFailure: If an earlier spill already failed.
            OutOfMemory: If the allocator ceiling is reached.
        """
        if self._result is not None:
            raise RuntimeError("BlockSpiller is closed")
        if not self._is_live():
            return False
        if self._failures:
            raise self._fail()

        row = row_producer() if callable(row_producer) else row_producer
        if row is None:
            return False
        if not self.constraint_evaluator.apply_row(row):
            self._rows_rejected += 1
            return False

        budget = self._block_budget
        block = self._current_block()
        if not block.append_row(row, max_bytes=budget):
            if block.row_count == 0:
                raise self._oversized()
            self._dispatch(block)
            block = self._current_block()
            if not block.append_row(row, max_bytes=budget):
                raise self._oversized()

        self._rows_written += 1
        if block.size_bytes >= budget:
            self._dispatch(block)
        return True

    def write_rows(self, rows: Iterable[RowProducer]) -> int:
        """Write rows until exhausted or cancelled; return how many were stored."""
        written = 0
        for row in rows:
            if self.write_row(row):
                written += 1
            elif self._cancelled:
                break
        return written

    def _oversized(self) -> InvalidRowData:
        return InvalidRowData(
            f"Row does not fit in an empty block of {self.config.max_block_bytes} bytes"
        )

    def _current_block(self) -> Block:
        if self._block is None:
            self._block = self.allocator.allocate(self.schema)
        return self._block

    def _is_live(self) -> bool:
        if self._cancelled:
            return False
        if self._liveness is not None and not self._liveness():
            self._cancel()
            return False
        return True

    def _cancel(self) -> None:
        self._cancelled = True
        if self._block is not None:
            self._block.release()
            self._block = None
        logger.info(
            "Query %s no longer running, stopped accepting rows after %d rows",
            self.config.request_id,
            self._rows_written,
        )

    def _dispatch(self, block: Block) -> None:
        block.seal()
        if block is self._block:
            self._block = None

        sequence = self._next_sequence
        self._next_sequence += 1
        record = SpilledBlock(
            sequence=sequence,
            location=self.config.spill_location.child(self.config.request_id, sequence),
            encryption_key=self.config.encryption_key,
            row_count=block.row_count,
            size_bytes=block.serialized_size_bytes + self._crypto.overhead,
        )

        if self._executor is None or self._slots is None:
            self._spill(record, block)
            return

        self._slots.acquire()
        try:
            future = self._executor.submit(self._spill, record, block)
        except BaseException:
            self._slots.release()
            block.release()
            raise
        slots = self._slots
        future.add_done_callback(lambda _: slots.release())
        self._futures.append(future)
        logger.debug("Dispatched block %d (%d rows) for spilling", sequence, record.row_count)

    def _spill(self, record: SpilledBlock, block: Block) -> None:
        try:
            payload = self._crypto.encrypt(block.serialize())
            self._write_with_retry(record.location, payload)
            with self._lock:
                self._completed[record.sequence] = record
            logger.debug(
                "Spilled block %d (%d rows, %d bytes) to %s",
                record.sequence,
                record.row_count,
                len(payload),
                record.location.uri,
            )
        except Exception as e:
            logger.exception("Spill of block %d to %s failed", record.sequence, record.location.uri)
            with self._lock:
                self._failures.append((record.sequence, e))
        finally:
            block.release()

    def _write_with_retry(self, location: SpillLocation, payload: bytes) -> None:
        attempts = self.config.max_spill_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.store.write(location, payload)
                return
            except Exception as e:
                if classify(e) is not ErrorKind.TRANSIENT or attempt == attempts:
                    raise
                logger.warning(
                    "Transient error writing %s (attempt %d of %d): %s",
                    location.uri,
                    attempt,
                    attempts,
                    e,
                )
                time.sleep(self.config.retry_backoff_seconds * attempt)

    def _fail(self) -> SpillFailure:
        with self._lock:
            failures = sorted(self._failures, key=lambda item: item[0])
        if self._error is None or len(self._error.failures) != len(failures):
            sequences = ", ".join(str(seq) for seq, _ in failures)
            self._error = SpillFailure(
                f"Failed to spill {len(failures)} block(s) for request "
                f"{self.config.request_id}: sequence {sequences}",
                failures,
            )
        return self._error

    def _wait(self) -> None:
        if self._futures:
            wait(self._futures)
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def close(self) -> SpillResult:
        """
        Finish the scan.

        Seals the last Block (returning it inline when it is small and nothing
        was spilled), waits for every outstanding spill, and reports the
        outcome. Calling close again returns the same result.

        Returns:
            SpillResult: The inline Block or the spilled Block locations.

        Raises:
            SpillFailure: If any spill failed and the scan was not cancelled.
        """
        if self._result is not None:
            return self._result

        inline_block: Block | None = None
        try:
            final = self._block
            self._block = None
            if final is not None:
                fits_inline = final.size_bytes <= self.config.max_inline_block_bytes
                if self._cancelled or self._failures:
                    final.release()
                elif not self.spilled and (fits_inline or final.row_count == 0):
                    inline_block = final.seal()
                elif final.row_count > 0:
                    self._dispatch(final)
                else:
                    final.release()
        finally:
            self._wait()

        if self._failures:
            if not self._cancelled:
                if inline_block is not None:
                    inline_block.release()
                raise self._fail()
            logger.warning(
                "Ignoring %d spill failure(s) for cancelled request %s",
                len(self._failures),
                self.config.request_id,
            )

        self._result = SpillResult(
            inline_block=inline_block,
            spilled=self.spilled_blocks(),
            rows_written=self._rows_written,
            rows_rejected=self._rows_rejected,
            cancelled=self._cancelled,
        )
        logger.info(
            "BlockSpiller closed for request %s: %d rows, %d spilled blocks, inline=%s, cancelled=%s",
            self.config.request_id,
            self._rows_written,
            len(self._result.spilled),
            inline_block is not None,
            self._cancelled,
        )
        return self._result

    def abort(self) -> None:
        """Discard buffered rows and wait for dispatched spills, without reporting errors."""
        if self._result is not None:
            return
        if self._block is not None:
            self._block.release()
            self._block = None
        self._cancelled = True
        self._wait()
        self._result = SpillResult(
            spilled=self.spilled_blocks(),
            rows_written=self._rows_written,
            rows_rejected=self._rows_rejected,
            cancelled=True,
        )

    def __enter__(self) -> "BlockSpiller":
        return self

    def __exit__(self, exc_type: type[BaseException] | None, *exc_info: object) -> None:
        if exc_type is not None:
            self.abort()
        else:
            self.close()
