from __future__ import annotations

from dataclasses import dataclass

from .errors import (
    InvalidConfigurationError,
    InvalidRangeError,
    MultiRangeUnsupportedError,
)

RANGE_UNIT = "bytes"


@dataclass(frozen=True, slots=True)
class ByteRange:
    """An inclusive ``start``-``end`` span of a resource's bytes."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            msg = f"invalid byte range {self.start}-{self.end}"
            raise InvalidRangeError(msg)

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        """Render the range as a ``Range`` request header value."""
        return f"{RANGE_UNIT}={self.start}-{self.end}"

    def content_range(self, total_length: int) -> str:
        """Render the range as a ``Content-Range`` response header value."""
        if self.end >= total_length:
            msg = f"range {self.start}-{self.end} exceeds length {total_length}"
            raise InvalidRangeError(msg)
        return f"{RANGE_UNIT} {self.start}-{self.end}/{total_length}"


def check_chunk_size(chunk_size: int) -> None:
    if chunk_size < 1:
        msg = f"chunk size must be at least 1, got {chunk_size}"
        raise InvalidConfigurationError(msg)


def plan_fixed_chunks(chunk_size: int, start: int, end: int) -> list[ByteRange]:
    """Split the inclusive span ``[start, end]`` into ``chunk_size`` pieces.

    The final piece is truncated to fit. ``end == start - 1`` is an empty
    span and produces no pieces.
    """
    check_chunk_size(chunk_size)
    if end == start - 1:
        return []
    if start < 0 or end < start:
        msg = f"invalid span {start}-{end}"
        raise InvalidRangeError(msg)
    return [
        ByteRange(offset, min(offset + chunk_size - 1, end))
        for offset in range(start, end + 1, chunk_size)
    ]


def parse_range(header: str | None, total_length: int) -> list[ByteRange]:
    """Parse a ``Range`` header against a resource of ``total_length`` bytes.

    Returns an empty list when no range was requested, otherwise exactly one
    resolved range. Open-ended and over-long ranges end at the last byte.

    Raises:
        InvalidRangeError: the header is malformed or unsatisfiable.
        MultiRangeUnsupportedError: more than one range was requested.
    """
    if header is None or not header.strip():
        return []

    unit, sep, value = header.strip().partition("=")
    if not sep or unit.strip().lower() != RANGE_UNIT:
        msg = f"unsupported range header {header!r}"
        raise InvalidRangeError(msg)

    specifiers = value.split(",")
    if len(specifiers) > 1:
        msg = f"multiple ranges are not supported: {header!r}"
        raise MultiRangeUnsupportedError(msg)

    start_str, sep, end_str = specifiers[0].strip().partition("-")
    if not sep:
        msg = f"malformed range specifier {specifiers[0]!r}"
        raise InvalidRangeError(msg)

    try:
        start = int(start_str)
        end = int(end_str) if end_str.strip() else total_length - 1
    except ValueError as exc:
        msg = f"unparsable range specifier {specifiers[0]!r}"
        raise InvalidRangeError(msg) from exc

    if start < 0 or start > end:
        msg = f"range start {start} is after end {end}"
        raise InvalidRangeError(msg)
    if start >= total_length:
        msg = f"range start {start} is beyond resource length {total_length}"
        raise InvalidRangeError(msg)

    return [ByteRange(start, min(end, total_length - 1))]


class Ranger:
    """Plans fixed-size chunks over whole resources."""

    def __init__(self, chunk_size: int):
        check_chunk_size(chunk_size)
        self.chunk_size = chunk_size

    def ranges(self, length: int) -> list[ByteRange]:
        return plan_fixed_chunks(self.chunk_size, 0, length - 1)

    def index(self, offset: int) -> int:
        """Return the index of the chunk holding ``offset``."""
        return offset // self.chunk_size

    def __repr__(self) -> str:
        return f"Ranger(chunk_size={self.chunk_size})"
