"""Local file system spill store implementation."""

import logging
import os
from pathlib import Path
from typing import Any

from typing_extensions import override

from spillway.storage.base import SpillLocation, SpillStore

logger = logging.getLogger(__name__)


class LocalSpillStore(SpillStore):
    """
    Write spilled Blocks below a local directory.

    A location maps to ``<root_dir>/<bucket>/<key>``.
    """

    def __init__(self, root_dir: str | Path) -> None:
        """
        Initialize LocalSpillStore.

        Args:
            root_dir: Directory under which buckets are created.

        Raises:
            ValueError: If root_dir exists and is not a directory.
        """
        self.root_dir = Path(root_dir)

        if self.root_dir.exists() and not self.root_dir.is_dir():
            raise ValueError(f"Path is not a directory: {root_dir}")

        logger.info("LocalSpillStore initialized for: %s", self.root_dir)

    def path_for(self, location: SpillLocation) -> Path:
        """
        Resolve a location to a file path inside root_dir.

        Raises:
            ValueError: If the key escapes root_dir.
        """
        path = (self.root_dir / location.bucket / location.key).resolve()
        root = self.root_dir.resolve()
        if root not in path.parents:
            raise ValueError(f"Location escapes store root: {location.uri}")
        return path

    @override
    def write(self, location: SpillLocation, payload: bytes) -> None:
        path = self.path_for(location)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning("Error writing spill file %s: %s", path, e)
            raise OSError(f"Failed to write spill file {path}: {e}") from e

        logger.debug("Wrote %d bytes to %s", len(payload), path)

    @override
    def read(self, location: SpillLocation) -> bytes:
        path = self.path_for(location)
        if not path.is_file():
            raise FileNotFoundError(f"Spill file not found: {path}")
        try:
            return path.read_bytes()
        except OSError as e:
            logger.exception("Error reading spill file %s: %s", path, e)
            raise OSError(f"Failed to read spill file {path}: {e}") from e

    @override
    def get_metadata(self) -> dict[str, Any]:
        return {"store_type": "local", "path": str(self.root_dir)}
