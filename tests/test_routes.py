import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from media_factory import aiter_bytes, make_frames
from sounds_proxy.configs import settings
from sounds_proxy.const import PUBLIC_MEDIA_URL
from sounds_proxy.exceptions import CorruptContainer, NotFound
from sounds_proxy.handlers import get_episode_cache, get_episode_source, get_sounds_client
from sounds_proxy.main import app
from sounds_proxy.utils.blob_store import MemoryBlobStore
from sounds_proxy.utils.cache_coordinator import CacheCoordinator

FRAMES = make_frames(3, size=200)


def leaf_exceptions(exc):
    if hasattr(exc, "exceptions"):
        for inner in exc.exceptions:
            yield from leaf_exceptions(inner)
    else:
        yield exc


SHOW_CONTAINER = {
    "data": [
        {
            "id": "container",
            "data": {
                "id": "b006qykl",
                "titles": {"primary": "In Our Time"},
                "synopses": {"short": "Ideas that shaped our world"},
                "network": {"short_title": "Radio 4"},
            },
        },
        {
            "id": "container_list",
            "data": [
                {
                    "id": "p0bzn8f1",
                    "titles": {"primary": "In Our Time", "secondary": "Cosmic Rays"},
                    "duration": {"value": 1800},
                    "release": {"date": "2024-03-07T09:00:00Z"},
                }
            ],
        },
    ]
}


class FakePlatform:
    """Answers the platform endpoints the routes talk to."""

    def __init__(self):
        self.public_pids = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if "audio-nondrm-download" in url:
            pid = url.rsplit("/", 1)[1][: -len(".mp3")]
            return httpx.Response(200 if pid in self.public_pids else 404)
        if "rms.api.bbc.co.uk" in url:
            return httpx.Response(200, json=SHOW_CONTAINER)
        return httpx.Response(404)


class FakeEpisode:
    def __init__(self, error=None, fail_after=0):
        self.error = error
        self.fail_after = fail_after
        self.calls = []

    async def __call__(self, pid):
        self.calls.append(pid)
        for index, frame in enumerate(FRAMES):
            if self.error is not None and index == self.fail_after:
                raise self.error
            yield frame


class PublicStore(MemoryBlobStore):
    def public_url(self, key):
        return f"https://cdn.test/{key}"


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def episode_source():
    return FakeEpisode()


@pytest.fixture
def make_api(platform, episode_source, make_sounds_client):
    """Factory for a TestClient whose upstream, pipeline and cache are replaced."""

    async def sounds_client():
        async with make_sounds_client(platform) as client:
            yield client

    def _make(coordinator=None):
        app.dependency_overrides[get_sounds_client] = sounds_client
        app.dependency_overrides[get_episode_source] = lambda: episode_source
        app.dependency_overrides[get_episode_cache] = lambda: coordinator
        return TestClient(app, follow_redirects=False)

    yield _make
    app.dependency_overrides.clear()


def test_health(make_api):
    with make_api() as api:
        response = api.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_episode_stream_without_cache(make_api, episode_source):
    with make_api() as api:
        response = api.get("/episode/p0bzn8f1.aac")

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/aac"
    assert response.headers["cache-control"] == "public, max-age=604800"
    assert response.content == b"".join(FRAMES)
    assert episode_source.calls == ["p0bzn8f1"]


def test_episode_head_does_not_run_the_pipeline(make_api, episode_source):
    with make_api() as api:
        response = api.head("/episode/p0bzn8f1.aac")

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/aac"
    assert response.content == b""
    assert episode_source.calls == []


def test_public_episode_is_redirected(make_api, platform, episode_source):
    platform.public_pids.add("p0bzn8f1")
    with make_api() as api:
        stream = api.get("/episode/p0bzn8f1.aac")
        episode = api.get("/episode/p0bzn8f1")

    expected = PUBLIC_MEDIA_URL.format(pid="p0bzn8f1")
    assert (stream.status_code, stream.headers["location"]) == (308, expected)
    assert (episode.status_code, episode.headers["location"]) == (308, expected)
    assert episode_source.calls == []


def test_public_episodes_are_proxied_when_redirects_are_disabled(make_api, platform, monkeypatch):
    monkeypatch.setattr(settings, "redirect_public_episodes", False)
    platform.public_pids.add("p0bzn8f1")
    with make_api() as api:
        response = api.get("/episode/p0bzn8f1.aac")

    assert response.status_code == 200
    assert response.content == b"".join(FRAMES)


def test_episode_redirects_to_the_proxied_stream(make_api):
    with make_api() as api:
        response = api.get("/episode/p0bzn8f1")

    assert response.status_code == 307
    assert response.headers["location"] == "http://proxy.test/episode/p0bzn8f1.aac"


@pytest.mark.parametrize("episode_source", [FakeEpisode(error=NotFound("No media for p0bzn8f1"))])
def test_error_before_streaming_keeps_its_status(make_api, episode_source):
    with make_api() as api:
        response = api.get("/episode/p0bzn8f1.aac")

    assert response.status_code == 404
    assert response.text == "No media for p0bzn8f1"


@pytest.mark.parametrize("episode_source", [FakeEpisode(error=CorruptContainer("bad packet"), fail_after=1)])
def test_error_mid_stream_aborts_the_response(make_api, episode_source):
    with make_api() as api:
        with pytest.raises(Exception) as exc_info:
            api.get("/episode/p0bzn8f1.aac")

    # The failure surfaces as an aborted transfer, never as a complete 200 body
    assert any(isinstance(exc, CorruptContainer) for exc in leaf_exceptions(exc_info.value))
    assert episode_source.calls == ["p0bzn8f1"]


def test_episode_stream_through_the_cache(make_api, episode_source):
    coordinator = CacheCoordinator(MemoryBlobStore(maxsize=1024 * 1024, ttl=60), source=episode_source)
    with make_api(coordinator) as api:
        first = api.get("/episode/p0bzn8f1.aac")
        second = api.get("/episode/p0bzn8f1.aac")

    assert first.status_code == second.status_code == 200
    assert first.content == second.content == b"".join(FRAMES)
    assert episode_source.calls == ["p0bzn8f1"]


@pytest.mark.parametrize("episode_source", [FakeEpisode(error=NotFound("No media for p0bzn8f1"))])
def test_failed_cache_build_keeps_the_cause_status(make_api, episode_source):
    coordinator = CacheCoordinator(MemoryBlobStore(maxsize=1024 * 1024, ttl=60), source=episode_source)
    with make_api(coordinator) as api:
        response = api.get("/episode/p0bzn8f1.aac")

    assert response.status_code == 404


def test_cached_episode_is_redirected_to_the_bucket(make_api, episode_source, monkeypatch):
    monkeypatch.setattr(settings, "s3_redirect", True)
    store = PublicStore(maxsize=1024 * 1024, ttl=60)
    asyncio.run(store.put("p0bzn8f1.aac", aiter_bytes([b"cached"])))
    coordinator = CacheCoordinator(store, source=episode_source)

    with make_api(coordinator) as api:
        cached = api.get("/episode/p0bzn8f1.aac")
        uncached = api.get("/episode/p0bzn8f2.aac")

    assert cached.status_code == 307
    assert cached.headers["location"] == "https://cdn.test/p0bzn8f1.aac"
    assert uncached.status_code == 200
    assert episode_source.calls == ["p0bzn8f2"]


def test_show_feed(make_api):
    with make_api() as api:
        response = api.get("/show/b006qykl")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/rss+xml")
    assert response.headers["cache-control"] == "public, max-age=900"
    assert b"<title>Cosmic Rays</title>" in response.content
    assert b'url="http://proxy.test/episode/p0bzn8f1"' in response.content


def test_show_feed_upstream_failure(make_api, platform, monkeypatch):
    monkeypatch.setattr(FakePlatform, "__call__", lambda self, request: httpx.Response(503))
    with make_api() as api:
        response = api.get("/show/b006qykl")

    assert response.status_code == 503
