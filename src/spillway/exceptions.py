"""Error taxonomy shared by the allocator, spiller and pagination layers."""

from enum import Enum


class ErrorKind(Enum):
    """How a caller should react to a failure."""

    UNSUPPORTED = "unsupported"
    TRANSIENT = "transient"
    FATAL = "fatal"


class SpillwayError(Exception):
    """Base class for every error raised by spillway."""

    kind: ErrorKind = ErrorKind.FATAL


class OutOfMemory(SpillwayError):
    """A BlockAllocator was asked for more bytes than its ceiling allows."""

    def __init__(self, requested: int, used: int, limit: int) -> None:
        self.requested = requested
        self.used = used
        self.limit = limit
        super().__init__(
            f"Allocation of {requested} bytes would exceed allocator ceiling "
            f"({used} of {limit} bytes in use)"
        )


class InvalidRowData(SpillwayError, ValueError):
    """A row does not fit the Block schema (wrong type, unknown column, null, too large)."""


class DecryptionError(SpillwayError):
    """A spilled payload could not be decrypted with the supplied key."""


class StorageError(SpillwayError, OSError):
    """A storage request that cannot succeed on retry (access denied, missing bucket)."""


class SpillFailure(SpillwayError):
    """
    One or more spill writes failed after exhausting their retries.

    All failures of a scan are aggregated into a single exception.
    """

    def __init__(self, message: str, failures: list[tuple[int, BaseException]] | None = None) -> None:
        self.failures = failures or []
        super().__init__(message)


class CapabilityMismatch(SpillwayError):
    """The request asks for something this listing, scan or catalog does not support."""

    kind = ErrorKind.UNSUPPORTED


def classify(exc: BaseException) -> ErrorKind:
    """
    Map an exception onto the retry taxonomy.

    Args:
        exc: Any exception raised while serving a request.

    Returns:
        ErrorKind: The spillway kind for spillway errors, TRANSIENT for I/O errors
        (OSError and its ConnectionError/TimeoutError subclasses), FATAL otherwise.
    """
    if isinstance(exc, SpillwayError):
        return exc.kind
    if isinstance(exc, OSError):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL
