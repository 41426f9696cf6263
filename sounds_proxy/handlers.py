import logging
from typing import AsyncIterator, Optional

from fastapi import Response
from fastapi.responses import RedirectResponse

from .bbc import SoundsClient
from .configs import settings
from .const import AAC_CONTENT_TYPE, EPISODE_CACHE_CONTROL, FEED_CACHE_CONTROL, RSS_CONTENT_TYPE
from .exceptions import SoundsProxyError
from .feed import get_podcast_feed
from .remuxer.pipeline import remux_episode
from .utils.cache_coordinator import CacheCoordinator, EpisodeSource, get_cache_coordinator
from .utils.http_utils import EnhancedStreamingResponse
from .utils.stream_sink import StreamSink

logger = logging.getLogger(__name__)


async def get_sounds_client() -> AsyncIterator[SoundsClient]:
    """Request-scoped platform client."""
    async with SoundsClient() as client:
        yield client


def get_episode_source() -> EpisodeSource:
    """The pipeline producing an episode's ADTS frames when no cache is configured."""
    return remux_episode


async def get_episode_cache() -> Optional[CacheCoordinator]:
    """The process-wide episode cache. Resolved on the event loop so it is only ever created once."""
    return get_cache_coordinator()


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response corresponding to the exception type.
    """
    if isinstance(exception, SoundsProxyError):
        log = logger.warning if exception.status_code < 500 else logger.error
        log(f"{type(exception).__name__}: {exception.message}")
        return Response(status_code=exception.status_code, content=exception.message)
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return Response(status_code=502, content=f"Internal server error: {exception}")


async def public_episode_url(client: SoundsClient, pid: str) -> Optional[str]:
    """Public MP3 of an episode if redirects to it are enabled and it has one."""
    if not settings.redirect_public_episodes:
        return None
    try:
        return await client.get_public_media_url(pid)
    except SoundsProxyError as e:
        logger.warning(f"Could not check for a public version of {pid}, proxying it: {e.message}")
        return None


def open_direct_stream(pid: str, source: EpisodeSource) -> AsyncIterator[bytes]:
    """Run the pipeline for a single client, stopping it when the client goes away."""
    sink = StreamSink(source(pid), name=f"stream of {pid}")
    consumer = sink.subscribe()
    sink.start()
    return consumer.iter_chunks()


async def handle_episode_stream(
    method: str,
    pid: str,
    client: SoundsClient,
    coordinator: Optional[CacheCoordinator],
    source: EpisodeSource,
) -> Response:
    """
    Serve an episode as an ADTS AAC stream.

    Episodes with a public MP3 are redirected to it. Otherwise the stream comes
    from the cache (built once and shared, see ``CacheCoordinator``) when one is
    configured, or straight from the remux pipeline.

    Args:
        method (str): The HTTP method (GET or HEAD).
        pid (str): The episode id.
        client (SoundsClient): Platform client for the public-version check.
        coordinator (CacheCoordinator): The episode cache, or None when caching is disabled.
        source (EpisodeSource): The pipeline used without a cache.

    Returns:
        Response: A redirect or a streaming response.
    """
    try:
        public_url = await public_episode_url(client, pid)
        if public_url:
            logger.info(f"Redirecting {pid} to its public version")
            return RedirectResponse(public_url, status_code=308)

        headers = {"Cache-Control": EPISODE_CACHE_CONTROL}
        if method == "HEAD":
            return Response(headers=headers, media_type=AAC_CONTENT_TYPE)

        if coordinator is not None:
            if settings.s3_redirect:
                cached_url = await coordinator.lookup(pid)
                if cached_url:
                    logger.info(f"Redirecting {pid} to its cached copy")
                    return RedirectResponse(cached_url, status_code=307)
            content = await coordinator.get_or_build(pid)
        else:
            content = open_direct_stream(pid, source)

        return EnhancedStreamingResponse(content, headers=headers, media_type=AAC_CONTENT_TYPE)
    except Exception as e:
        return handle_exceptions(e)


async def handle_episode_redirect(pid: str, client: SoundsClient) -> Response:
    """Send an episode's clients to its public MP3, or to the proxied AAC stream."""
    try:
        public_url = await public_episode_url(client, pid)
    except Exception as e:
        return handle_exceptions(e)
    if public_url:
        return RedirectResponse(public_url, status_code=308)
    return RedirectResponse(f"{settings.base_url.rstrip('/')}/episode/{pid}.aac", status_code=307)


async def handle_show_feed(pid: str, client: SoundsClient) -> Response:
    try:
        feed = await get_podcast_feed(client, settings.base_url, pid)
    except Exception as e:
        return handle_exceptions(e)
    return Response(content=feed, media_type=RSS_CONTENT_TYPE, headers={"Cache-Control": FEED_CACHE_CONTROL})
