from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.handlers import (
    get_episode_cache,
    get_episode_source,
    get_sounds_client,
    handle_episode_redirect,
    handle_episode_stream,
)
from sounds_proxy.utils.cache_coordinator import CacheCoordinator, EpisodeSource

episode_router = APIRouter()


# Registered before "/{pid}", which would otherwise match "<pid>.aac" too
@episode_router.head("/{pid}.aac")
@episode_router.get("/{pid}.aac")
async def episode_stream(
    request: Request,
    pid: str,
    client: Annotated[SoundsClient, Depends(get_sounds_client)],
    coordinator: Annotated[Optional[CacheCoordinator], Depends(get_episode_cache)],
    source: Annotated[EpisodeSource, Depends(get_episode_source)],
):
    """
    Stream an episode as ADTS AAC.

    Args:
        request (Request): The incoming HTTP request.
        pid (str): The episode id.
        client (SoundsClient): Platform client.
        coordinator (CacheCoordinator): The episode cache, if one is configured.
        source (EpisodeSource): The remux pipeline used without a cache.

    Returns:
        Response: The AAC stream, or a redirect to a public or cached copy.
    """
    return await handle_episode_stream(request.method, pid, client, coordinator, source)


@episode_router.get("/{pid}")
async def episode(pid: str, client: Annotated[SoundsClient, Depends(get_sounds_client)]):
    """Redirect to the episode's public MP3, or to its proxied AAC stream."""
    return await handle_episode_redirect(pid, client)
