from typing import Annotated

from fastapi import APIRouter, Depends

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.handlers import get_sounds_client, handle_show_feed

feed_router = APIRouter()


@feed_router.get("/{pid}", summary="Podcast feed of a show")
async def show_feed(pid: str, client: Annotated[SoundsClient, Depends(get_sounds_client)]):
    return await handle_show_feed(pid, client)
