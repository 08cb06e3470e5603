from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from anyio import to_thread
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProbeError, RangeUnsupportedError
from .source import RangedSource

if TYPE_CHECKING:
    from collections.abc import Callable

    from .ranges import ByteRange, Ranger

LOG = logging.getLogger("ranger_stream.s3")


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


class S3Loader:
    """Loads byte ranges of one S3 object through a boto3 client."""

    def __init__(self, client: Any, bucket: str, key: str):
        self._client = client
        self.bucket = bucket
        self.key = key

    async def load(self, byte_range: ByteRange) -> bytes:
        result = await _run_sync(
            self._client.get_object,
            Bucket=self.bucket,
            Key=self.key,
            Range=byte_range.header(),
        )
        body = result["Body"]
        try:
            return await _run_sync(body.read)
        finally:
            await _run_sync(body.close)

    def __repr__(self) -> str:
        return f"S3Loader(s3://{self.bucket}/{self.key})"


async def probe_s3_object(client: Any, bucket: str, key: str) -> int:
    """Return the length of ``s3://bucket/key``.

    Raises:
        RangeUnsupportedError: the object does not advertise byte ranges.
        ProbeError: the object could not be inspected.
    """
    try:
        head = await _run_sync(client.head_object, Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError) as exc:
        LOG.warning("head_object failed for s3://%s/%s: %s", bucket, key, exc)
        msg = f"unable to probe s3://{bucket}/{key}"
        raise ProbeError(msg) from exc

    accept_ranges = head.get("AcceptRanges")
    if (accept_ranges or "").lower() != "bytes":
        msg = f"s3://{bucket}/{key} does not support ranges: {accept_ranges!r}"
        raise RangeUnsupportedError(msg)

    length = head.get("ContentLength")
    if not isinstance(length, int) or length < 0:
        msg = f"missing ContentLength for s3://{bucket}/{key}"
        raise ProbeError(msg)
    return length


async def open_s3_source(
    client: Any, bucket: str, key: str, ranger: Ranger
) -> RangedSource:
    length = await probe_s3_object(client, bucket, key)
    LOG.debug("opened s3://%s/%s (%d bytes, %r)", bucket, key, length, ranger)
    return RangedSource(length, S3Loader(client, bucket, key), ranger)
