"""Spill configuration."""

from collections.abc import Mapping
from dataclasses import dataclass, replace
import logging
import os
from typing import TYPE_CHECKING

from spillway.crypto import EncryptionKey
from spillway.storage.base import SpillLocation

if TYPE_CHECKING:
    from spillway.splits import Split

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCK_BYTES = 16 * 1024 * 1024
DEFAULT_MAX_INLINE_BLOCK_BYTES = 5 * 1024 * 1024
DEFAULT_NUM_SPILL_THREADS = 4
DEFAULT_MAX_SPILL_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.2
DEFAULT_SPILL_PREFIX = "athena-spill"


@dataclass(frozen=True)
class SpillConfig:
    """
    Immutable settings for one scan's BlockSpiller.

    Attributes:
        spill_location: Base location; Blocks land at ``<key>/<request_id>/<seq>``.
        request_id: Identifier correlating all spilled objects of one scan.
        encryption_key: Key for spilled payloads; None stores them unencrypted.
        max_block_bytes: Size at which a Block is sealed.
        max_inline_block_bytes: Largest final Block returned inline instead of spilled.
        num_spill_threads: 0 spills synchronously, otherwise the spill pool size.
        max_spill_attempts: Attempts per Block for transient storage errors.
        retry_backoff_seconds: Linear backoff step between attempts.
    """

    spill_location: SpillLocation
    request_id: str
    encryption_key: EncryptionKey | None = None
    max_block_bytes: int = DEFAULT_MAX_BLOCK_BYTES
    max_inline_block_bytes: int = DEFAULT_MAX_INLINE_BLOCK_BYTES
    num_spill_threads: int = DEFAULT_NUM_SPILL_THREADS
    max_spill_attempts: int = DEFAULT_MAX_SPILL_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if not self.request_id:
            raise ValueError("request_id must be non-empty")
        if self.max_block_bytes <= 0:
            raise ValueError("max_block_bytes must be positive")
        if self.max_inline_block_bytes < 0:
            raise ValueError("max_inline_block_bytes must be non-negative")
        if self.num_spill_threads < 0:
            raise ValueError("num_spill_threads must be non-negative")
        if self.max_spill_attempts < 1:
            raise ValueError("max_spill_attempts must be at least 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be non-negative")

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, str],
        request_id: str,
        encryption_key: EncryptionKey | None = None,
    ) -> "SpillConfig":
        """
        Build a config from connector options, falling back to environment variables.

        Recognized keys (environment variable in upper case): ``spill_bucket``
        (required), ``spill_prefix``, ``max_block_bytes``,
        ``max_inline_block_bytes``, ``num_spill_threads``.

        Raises:
            ValueError: If no spill bucket is configured or a number is malformed.
        """

        def option(name: str) -> str | None:
            value = options.get(name)
            if value is None:
                value = os.environ.get(name.upper())
            return value

        bucket = option("spill_bucket")
        if not bucket:
            raise ValueError("spill_bucket must be configured")
        prefix = option("spill_prefix") or DEFAULT_SPILL_PREFIX

        def number(name: str, default: int) -> int:
            raw = option(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as e:
                raise ValueError(f"{name} must be an integer, got {raw!r}") from e

        config = cls(
            spill_location=SpillLocation(bucket, prefix, directory=True),
            request_id=request_id,
            encryption_key=encryption_key,
            max_block_bytes=number("max_block_bytes", DEFAULT_MAX_BLOCK_BYTES),
            max_inline_block_bytes=number("max_inline_block_bytes", DEFAULT_MAX_INLINE_BLOCK_BYTES),
            num_spill_threads=number("num_spill_threads", DEFAULT_NUM_SPILL_THREADS),
        )
        logger.debug("SpillConfig built from options for request %s at %s", request_id, bucket)
        return config

    def with_split(self, split: "Split") -> "SpillConfig":
        """Target the spill location and key pre-assigned to a split, when it has them."""
        return replace(
            self,
            spill_location=split.spill_location or self.spill_location,
            encryption_key=split.encryption_key or self.encryption_key,
        )

    def with_limits(self, max_block_bytes: int = 0, max_inline_block_bytes: int = 0) -> "SpillConfig":
        """Override the size limits; zero keeps the current value."""
        return replace(
            self,
            max_block_bytes=max_block_bytes or self.max_block_bytes,
            max_inline_block_bytes=max_inline_block_bytes or self.max_inline_block_bytes,
        )
