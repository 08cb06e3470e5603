from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .ranges import ByteRange


class RangerError(Exception):
    """Base class for every error raised by ranger_stream."""


class InvalidConfigurationError(RangerError, ValueError):
    """A chunk size or concurrency limit below one."""


class InvalidRangeError(RangerError, ValueError):
    """A malformed or unsatisfiable range specifier."""


class MultiRangeUnsupportedError(InvalidRangeError):
    """More than one range specifier was requested."""


class RangeUnsupportedError(RangerError):
    """The target does not advertise ``Accept-Ranges: bytes``."""


class ProbeError(RangerError):
    """The resource length could not be determined."""


class ChunkFetchError(RangerError):
    """Loading a single chunk failed."""

    def __init__(self, byte_range: ByteRange, message: str | None = None):
        self.byte_range = byte_range
        super().__init__(
            message
            or f"failed to fetch bytes {byte_range.start}-{byte_range.end}"
        )


class ShortReadError(ChunkFetchError):
    def __init__(self, byte_range: ByteRange, received: int):
        self.expected = byte_range.length
        self.received = received
        super().__init__(
            byte_range,
            f"short read for bytes {byte_range.start}-{byte_range.end}: "
            f"expected {self.expected} bytes, got {received}",
        )


class FetchCancelledError(RangerError):
    """The fetch was cancelled before every chunk was delivered."""
