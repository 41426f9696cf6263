import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Optional

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.configs import settings
from sounds_proxy.exceptions import SegmentFetchFailed, SoundsProxyError
from sounds_proxy.remuxer.hls_manifest import Manifest, SegmentRef

logger = logging.getLogger(__name__)


async def fetch_segment(client: SoundsClient, index: int, segment: SegmentRef) -> bytes:
    headers = {"Range": segment.byte_range.header_value} if segment.byte_range else None
    try:
        data = await client.get_bytes(segment.url, headers)
    except SoundsProxyError as e:
        raise SegmentFetchFailed(index, segment.url, e) from e
    logger.debug("[segment_source] Fetched segment %d: %d bytes", index, len(data))
    return data


async def iter_segments(
    client: SoundsClient, manifest: Manifest, prefetch: Optional[int] = None
) -> AsyncIterator[bytes]:
    """
    Yield the manifest's segments in order, fetching up to ``prefetch`` segments ahead.

    Fetches run as tasks so that later segments download while the current one
    is being consumed, but buffers are always released in manifest order. The
    first failed fetch ends the sequence with ``SegmentFetchFailed``; closing
    the generator early cancels whatever is still in flight.
    """
    window = settings.segment_prefetch if prefetch is None else max(0, prefetch)
    pending: deque[asyncio.Task] = deque()
    segments = enumerate(manifest.segments)

    def schedule() -> None:
        while len(pending) <= window:
            entry = next(segments, None)
            if entry is None:
                return
            index, segment = entry
            pending.append(asyncio.create_task(fetch_segment(client, index, segment)))

    try:
        schedule()
        while pending:
            task = pending.popleft()
            data = await task
            yield data
            schedule()
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
