import httpx
import pytest

from sounds_proxy.exceptions import MalformedManifest, NotFound, UnsupportedCodec, UpstreamUnavailable
from sounds_proxy.remuxer.manifest_resolver import resolve_manifest, select_hls_url
from sounds_proxy.schemas import MediaList


def media_selector_payload(*media):
    return {"media": list(media)}


def audio_media(bitrate, *connections):
    return {
        "kind": "audio",
        "type": "audio/mp4",
        "bitrate": str(bitrate),
        "encoding": "aac",
        "connection": [{"protocol": protocol, "href": href, "transferFormat": "hls"} for protocol, href in connections],
    }


MEDIA = media_selector_payload(
    audio_media(48, ("https", "https://vod.test/low/master.m3u8")),
    audio_media(
        320,
        ("http", "http://vod.test/high/master.m3u8"),
        ("https", "https://vod.test/high/master.m3u8"),
    ),
    audio_media(96, ("https", "https://vod.test/mid/master.m3u8")),
)

MASTER = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=320000,CODECS="mp4a.40.2"
audio=320000.m3u8
"""

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXTINF:3.84,
segment-1.ts
#EXTINF:3.84,
segment-2.ts
#EXT-X-ENDLIST
"""


def platform_handler(requests, media=MEDIA, master=MASTER, playlist=MEDIA_PLAYLIST):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        if "mediaselector" in request.url.host or "mediaselector" in request.url.path:
            return httpx.Response(200, json=media)
        if request.url.path.endswith("master.m3u8"):
            return httpx.Response(200, text=master)
        if request.url.path.endswith("audio=320000.m3u8"):
            return httpx.Response(200, text=playlist)
        return httpx.Response(404)

    return handler


def test_highest_bitrate_https_connection_is_selected():
    media_list = MediaList.model_validate(MEDIA)
    assert select_hls_url("p0bzn8f1", media_list) == "https://vod.test/high/master.m3u8"


def test_no_audio_media_is_not_found():
    media_list = MediaList.model_validate(
        media_selector_payload({"kind": "video", "bitrate": "1500", "connection": [{"protocol": "https", "href": "x"}]})
    )
    with pytest.raises(NotFound):
        select_hls_url("p0bzn8f1", media_list)


def test_non_hls_media_is_unsupported():
    media_list = MediaList.model_validate(media_selector_payload(audio_media(128, ("https", "https://vod.test/a.mp3"))))
    with pytest.raises(UnsupportedCodec):
        select_hls_url("p0bzn8f1", media_list)


@pytest.mark.asyncio
async def test_resolve_follows_master_playlist(make_sounds_client):
    requests = []
    async with make_sounds_client(platform_handler(requests)) as client:
        manifest = await resolve_manifest(client, "p0bzn8f1")

    assert manifest.playlist_url == "https://vod.test/high/audio=320000.m3u8"
    assert [segment.url for segment in manifest.segments] == [
        "https://vod.test/high/segment-1.ts",
        "https://vod.test/high/segment-2.ts",
    ]
    assert requests[1:] == ["https://vod.test/high/master.m3u8", "https://vod.test/high/audio=320000.m3u8"]


@pytest.mark.asyncio
async def test_resolution_is_idempotent(make_sounds_client):
    async with make_sounds_client(platform_handler([])) as client:
        first = await resolve_manifest(client, "p0bzn8f1")
        second = await resolve_manifest(client, "p0bzn8f1")
    assert first == second


@pytest.mark.asyncio
async def test_media_playlist_can_be_served_directly(make_sounds_client):
    async with make_sounds_client(platform_handler([], master=MEDIA_PLAYLIST)) as client:
        manifest = await resolve_manifest(client, "p0bzn8f1")
    assert manifest.playlist_url == "https://vod.test/high/master.m3u8"
    assert len(manifest.segments) == 2


@pytest.mark.asyncio
async def test_nested_master_playlist_is_malformed(make_sounds_client):
    async with make_sounds_client(platform_handler([], playlist=MASTER)) as client:
        with pytest.raises(MalformedManifest):
            await resolve_manifest(client, "p0bzn8f1")


@pytest.mark.asyncio
async def test_unknown_episode_is_not_found(make_sounds_client):
    async with make_sounds_client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(NotFound):
            await resolve_manifest(client, "p0nope00")


@pytest.mark.asyncio
async def test_media_selector_error_result_is_not_found(make_sounds_client):
    handler = platform_handler([], media={"result": "selectionunavailable"})
    async with make_sounds_client(handler) as client:
        with pytest.raises(NotFound):
            await resolve_manifest(client, "p0bzn8f1")


@pytest.mark.asyncio
async def test_platform_outage_is_upstream_unavailable(make_sounds_client):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    async with make_sounds_client(handler) as client:
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await resolve_manifest(client, "p0bzn8f1")

    assert exc_info.value.upstream_status == 503
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_unexpected_media_selector_payload(make_sounds_client):
    handler = platform_handler([], media={"media": [{"kind": "audio", "connection": "none"}]})
    async with make_sounds_client(handler) as client:
        with pytest.raises(UpstreamUnavailable):
            await resolve_manifest(client, "p0bzn8f1")
