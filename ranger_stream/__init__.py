"""Parallel, ordered byte-range fetching for large remote resources."""

from .chunk import Chunk, FunctionLoader, Loader, build_chunks
from .client import HttpLoader, RangedTransport, new_client, probe
from .errors import (
    ChunkFetchError,
    FetchCancelledError,
    InvalidConfigurationError,
    InvalidRangeError,
    MultiRangeUnsupportedError,
    ProbeError,
    RangerError,
    RangeUnsupportedError,
    ShortReadError,
)
from .multiplexer import OrderedStreamMultiplexer
from .pipe import PipeReader, PipeWriter, create_pipe
from .pipeline import PipelineRunner, fetch_ordered
from .ranges import ByteRange, Ranger, parse_range, plan_fixed_chunks
from .source import RangedReader, RangedSource

__all__ = [
    "ByteRange",
    "Chunk",
    "ChunkFetchError",
    "FetchCancelledError",
    "FunctionLoader",
    "HttpLoader",
    "InvalidConfigurationError",
    "InvalidRangeError",
    "Loader",
    "MultiRangeUnsupportedError",
    "OrderedStreamMultiplexer",
    "PipeReader",
    "PipeWriter",
    "PipelineRunner",
    "ProbeError",
    "RangeUnsupportedError",
    "RangedReader",
    "RangedSource",
    "Ranger",
    "RangerError",
    "ShortReadError",
    "build_chunks",
    "create_pipe",
    "fetch_ordered",
    "new_client",
    "parse_range",
    "plan_fixed_chunks",
    "probe",
]
