import httpx
import pytest

from media_factory import TSBuilder, make_frames
from sounds_proxy.exceptions import SegmentFetchFailed
from sounds_proxy.remuxer.pipeline import remux_episode

FRAMES = make_frames(3, size=200)

MEDIA = {
    "media": [
        {
            "kind": "audio",
            "bitrate": "320",
            "connection": [{"protocol": "https", "href": "https://vod.test/p0bzn8f1/master.m3u8", "transferFormat": "hls"}],
        }
    ]
}

PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXTINF:3.84,
segment-0.ts
#EXTINF:3.84,
segment-1.ts
#EXTINF:3.84,
segment-2.ts
#EXT-X-ENDLIST
"""


class EpisodeServer:
    """Serves one episode: media selector answer, playlist and one frame per segment."""

    def __init__(self, failing_segment=None):
        builder = TSBuilder()
        self.segments = {f"/p0bzn8f1/segment-{i}.ts": builder.segment([frame]) for i, frame in enumerate(FRAMES)}
        self.failing_segment = failing_segment
        self.requested = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requested.append(request.url.path)
        if "mediaselector" in request.url.path:
            return httpx.Response(200, json=MEDIA)
        if request.url.path == "/p0bzn8f1/master.m3u8":
            return httpx.Response(200, text=PLAYLIST)
        if request.url.path == self.failing_segment:
            return httpx.Response(404)
        if request.url.path in self.segments:
            return httpx.Response(200, content=self.segments[request.url.path])
        return httpx.Response(404)


@pytest.mark.asyncio
async def test_p0bzn8f1_episode_is_remuxed_to_adts(make_sounds_client):
    server = EpisodeServer()
    clients = []

    def client_factory():
        clients.append(make_sounds_client(server))
        return clients[-1]

    output = [frame async for frame in remux_episode("p0bzn8f1", client_factory=client_factory)]

    assert output == FRAMES
    assert len(clients) == 1
    assert clients[0].client.is_closed


@pytest.mark.asyncio
async def test_segment_failure_ends_the_episode_stream(make_sounds_client):
    server = EpisodeServer(failing_segment="/p0bzn8f1/segment-1.ts")
    output = []

    with pytest.raises(SegmentFetchFailed):
        async for frame in remux_episode("p0bzn8f1", client_factory=lambda: make_sounds_client(server)):
            output.append(frame)

    assert output == FRAMES[:1]
