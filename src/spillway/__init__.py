"""Spillway: bounded columnar result batches that spill to encrypted storage."""

from spillway.allocator import BlockAllocator
from spillway.block import Block
from spillway.config import SpillConfig
from spillway.constraints import ConstraintEvaluator
from spillway.exceptions import (
    CapabilityMismatch,
    ErrorKind,
    InvalidRowData,
    OutOfMemory,
    SpillFailure,
    SpillwayError,
)
from spillway.reader import SpillReader
from spillway.spiller import BlockSpiller, SpillResult

__all__ = [
    "Block",
    "BlockAllocator",
    "BlockSpiller",
    "CapabilityMismatch",
    "ConstraintEvaluator",
    "ErrorKind",
    "InvalidRowData",
    "OutOfMemory",
    "SpillConfig",
    "SpillFailure",
    "SpillReader",
    "SpillResult",
    "SpillwayError",
]
