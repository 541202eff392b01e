"""Storage backends for spilled Blocks."""

from spillway.storage.base import SpillLocation, SpillStore
from spillway.storage.local import LocalSpillStore
from spillway.storage.memory import MemorySpillStore
from spillway.storage.s3 import S3SpillStore

__all__ = [
    "LocalSpillStore",
    "MemorySpillStore",
    "S3SpillStore",
    "SpillLocation",
    "SpillStore",
]
