import logging
import time
from typing import AsyncIterator, Callable, Optional

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.exceptions import SoundsProxyError
from sounds_proxy.remuxer.hls_manifest import Manifest
from sounds_proxy.remuxer.manifest_resolver import resolve_manifest
from sounds_proxy.remuxer.segment_source import iter_segments
from sounds_proxy.remuxer.ts_demuxer import remux_to_adts

logger = logging.getLogger(__name__)


async def stream_manifest(
    client: SoundsClient,
    manifest: Manifest,
    prefetch: Optional[int] = None,
    max_errors: Optional[int] = None,
) -> AsyncIterator[bytes]:
    """Fetch a manifest's segments and yield its audio as ADTS frames."""
    segments = iter_segments(client, manifest, prefetch)
    try:
        async for frame in remux_to_adts(segments, max_errors):
            yield frame
    finally:
        await segments.aclose()


async def remux_episode(
    episode_id: str, client_factory: Callable[[], SoundsClient] = SoundsClient
) -> AsyncIterator[bytes]:
    """
    Run the whole pipeline for one episode: resolve, fetch, demux.

    Owns its platform client for the lifetime of the stream, so it can run
    detached from the request that started it.
    """
    start = time.monotonic()
    frames = 0
    size = 0
    async with client_factory() as client:
        try:
            manifest = await resolve_manifest(client, episode_id)
            stream = stream_manifest(client, manifest)
            try:
                async for frame in stream:
                    frames += 1
                    size += len(frame)
                    yield frame
            finally:
                await stream.aclose()
        except SoundsProxyError as e:
            logger.error(f"Remuxing {episode_id} failed after {frames} frames: {e.message}")
            raise
    logger.info(f"Remuxed {episode_id}: {frames} frames, {size} bytes in {time.monotonic() - start:.1f}s")
