"""
Single-flight episode cache.

An episode is either absent from the blob store, being built, or present.
The first request for an absent episode starts one build task that runs
independently of any request: its frames go to the upload and, live, to
every consumer that attached before the first frame was produced. Requests
arriving later in a build wait for it and are then served from the store.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional

from sounds_proxy.configs import settings
from sounds_proxy.const import AAC_CONTENT_TYPE
from sounds_proxy.exceptions import CacheBuildFailed
from sounds_proxy.remuxer.pipeline import remux_episode
from sounds_proxy.utils.blob_store import BlobStore, create_blob_store
from sounds_proxy.utils.stream_sink import StreamConsumer, StreamSink

logger = logging.getLogger(__name__)

_MAX_KEY_LOCKS = 256

EpisodeSource = Callable[[str], AsyncIterator[bytes]]


@dataclass
class InFlightBuild:
    episode_id: str
    key: str
    sink: StreamSink
    upload: StreamConsumer
    started_at: float = field(default_factory=time.monotonic)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    error: Optional[BaseException] = None
    task: Optional[asyncio.Task] = None

    def attach(self) -> Optional[StreamConsumer]:
        """Subscribe to the live stream, or return None once frames have already gone out."""
        if self.sink.frames_produced == 0 and not self.done.is_set():
            return self.sink.subscribe()
        return None

    async def wait(self) -> None:
        await self.done.wait()
        if self.error is not None:
            raise CacheBuildFailed(self.episode_id, self.error)


class CacheCoordinator:
    def __init__(self, store: BlobStore, source: EpisodeSource = remux_episode, key_prefix: Optional[str] = None):
        self.store = store
        self.source = source
        self.key_prefix = settings.cache_key_prefix if key_prefix is None else key_prefix
        self._builds: Dict[str, InFlightBuild] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # protects the dict itself

    def cache_key(self, episode_id: str) -> str:
        return f"{self.key_prefix}{episode_id}.aac"

    def in_flight(self, episode_id: str) -> Optional[InFlightBuild]:
        return self._builds.get(self.cache_key(episode_id))

    async def _get_lock(self, key: str) -> asyncio.Lock:
        """Return (or create) the lock serialising state changes for one key."""
        async with self._locks_lock:
            lock = self._locks.get(key)
            if lock is None:
                # Evict idle locks when the dict grows too large.
                if len(self._locks) >= _MAX_KEY_LOCKS:
                    to_remove = [k for k, v in self._locks.items() if not v.locked()]
                    for k in to_remove[: len(to_remove) // 2 or 1]:
                        del self._locks[k]
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def _is_present(self, key: str) -> bool:
        try:
            return await self.store.exists(key)
        except Exception as e:
            logger.warning(f"Blob store lookup for {key} failed, treating it as absent: {e}")
            return False

    async def lookup(self, episode_id: str) -> Optional[str]:
        """Public URL of a cached episode, if it is present and the store exposes one."""
        key = self.cache_key(episode_id)
        url = self.store.public_url(key)
        if url is None or key in self._builds or not await self._is_present(key):
            return None
        return url

    async def get_or_build(self, episode_id: str) -> AsyncIterator[bytes]:
        """
        Return the episode's ADTS stream, building and caching it if needed.

        Errors of a build are raised from the returned iterator as ``CacheBuildFailed``.
        """
        key = self.cache_key(episode_id)
        lock = await self._get_lock(key)
        async with lock:
            build = self._builds.get(key)
            if build is None:
                if await self._is_present(key):
                    logger.info(f"Cache hit for {episode_id}")
                    return self.store.open(key)
                logger.info(f"Cache miss for {episode_id}, starting build")
                build = self._start_build(episode_id, key)
            consumer = build.attach()

        if consumer is not None:
            logger.debug(f"Streaming {episode_id} live from its build")
            return self._stream_live(build, consumer)
        logger.debug(f"Build of {episode_id} already streaming, waiting for it to complete")
        return self._stream_after_build(build)

    def _start_build(self, episode_id: str, key: str) -> InFlightBuild:
        sink = StreamSink(self.source(episode_id), name=f"build of {episode_id}")
        build = InFlightBuild(episode_id=episode_id, key=key, sink=sink, upload=sink.subscribe())
        self._builds[key] = build
        build.task = asyncio.create_task(self._run_build(build))
        sink.start()
        return build

    async def _run_build(self, build: InFlightBuild) -> None:
        chunks = build.upload.iter_chunks()
        try:
            size = await self.store.put(build.key, chunks, content_type=AAC_CONTENT_TYPE)
            await build.sink.wait()
            logger.info(
                f"Cached {build.episode_id} as {build.key} ({size} bytes in {time.monotonic() - build.started_at:.1f}s)"
            )
        except BaseException as e:
            build.error = e
            logger.error(f"Caching {build.episode_id} failed: {e!r}")
            # Live consumers keep their stream; retire only once the producer has stopped
            await chunks.aclose()
            build.upload.close()
            await build.sink.wait()
            if isinstance(e, asyncio.CancelledError):
                raise
        finally:
            if self._builds.get(build.key) is build:
                del self._builds[build.key]
            build.done.set()

    async def _stream_live(self, build: InFlightBuild, consumer: StreamConsumer) -> AsyncIterator[bytes]:
        chunks = consumer.iter_chunks()
        try:
            async for chunk in chunks:
                yield chunk
        except CacheBuildFailed:
            raise
        except Exception as e:
            raise CacheBuildFailed(build.episode_id, e) from e
        finally:
            await chunks.aclose()
            consumer.close()

    async def _stream_after_build(self, build: InFlightBuild) -> AsyncIterator[bytes]:
        await build.wait()
        chunks = self.store.open(build.key)
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()


_coordinator: Optional[CacheCoordinator] = None
_coordinator_configured = False


def get_cache_coordinator() -> Optional[CacheCoordinator]:
    """Get the process-wide coordinator (lazy singleton). None when no blob store is configured."""
    global _coordinator, _coordinator_configured
    if not _coordinator_configured:
        store = create_blob_store()
        _coordinator = CacheCoordinator(store) if store is not None else None
        _coordinator_configured = True
    return _coordinator
