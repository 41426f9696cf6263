"""
Pytest configuration.

Upstream HTTP is never reached: tests build ``SoundsClient`` instances on top of
``httpx.MockTransport`` and retries run without back-off.
"""

import httpx
import pytest
import tenacity

from sounds_proxy.bbc import SoundsClient
from sounds_proxy.configs import settings
from sounds_proxy.utils.http_utils import create_httpx_client, fetch_with_retry


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(fetch_with_retry.retry, "wait", tenacity.wait_none())


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Keep tests independent of the environment the suite runs in."""
    monkeypatch.setattr(settings, "base_url", "http://proxy.test")
    monkeypatch.setattr(settings, "segment_prefetch", 2)
    monkeypatch.setattr(settings, "sink_queue_size", 256)
    monkeypatch.setattr(settings, "max_container_errors", 8)
    monkeypatch.setattr(settings, "cache_key_prefix", "")
    monkeypatch.setattr(settings, "s3_redirect", False)
    monkeypatch.setattr(settings, "redirect_public_episodes", True)


@pytest.fixture
def make_sounds_client():
    """
    Factory fixture building a ``SoundsClient`` answered by a handler function.

    Usage:
        def test_something(make_sounds_client):
            client = make_sounds_client(lambda request: httpx.Response(200, text="..."))
    """

    def _make(handler) -> SoundsClient:
        return SoundsClient(create_httpx_client(transport=httpx.MockTransport(handler)))

    return _make
