"""In-process spill store, for tests and single-process pipelines."""

import threading
from typing import Any

from typing_extensions import override

from spillway.storage.base import SpillLocation, SpillStore


class MemorySpillStore(SpillStore):
    """Keep spilled payloads in a dictionary keyed by (bucket, key)."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    @property
    def objects(self) -> dict[tuple[str, str], bytes]:
        """Snapshot of everything stored so far."""
        with self._lock:
            return dict(self._objects)

    @override
    def write(self, location: SpillLocation, payload: bytes) -> None:
        with self._lock:
            self._objects[(location.bucket, location.key)] = bytes(payload)

    @override
    def read(self, location: SpillLocation) -> bytes:
        with self._lock:
            try:
                return self._objects[(location.bucket, location.key)]
            except KeyError:
                raise FileNotFoundError(f"No spilled object at {location.uri}") from None

    @override
    def get_metadata(self) -> dict[str, Any]:
        with self._lock:
            return {"store_type": "memory", "objects": len(self._objects)}
