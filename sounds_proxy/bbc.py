import logging
from typing import Optional
from urllib.parse import quote

import httpx
import tenacity
from pydantic import ValidationError

from sounds_proxy.const import MEDIA_SELECTOR_URL, PUBLIC_MEDIA_URL, RMS_CONTAINER_URL, SERIES_URN
from sounds_proxy.exceptions import NotFound, SoundsProxyError, UpstreamUnavailable
from sounds_proxy.schemas import ContainerResponse, MediaList
from sounds_proxy.utils.http_utils import DownloadError, create_httpx_client, fetch_with_retry

logger = logging.getLogger(__name__)


def upstream_error(exception: Exception, url: str) -> SoundsProxyError:
    """Translate a failed upstream request into the proxy's error taxonomy."""
    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        if status_code in (400, 404):
            return NotFound(f"Not found upstream: {url}")
        return UpstreamUnavailable(f"Upstream responded {status_code} for {url}", upstream_status=status_code)
    if isinstance(exception, DownloadError):
        return UpstreamUnavailable(exception.message, upstream_status=exception.status_code)
    if isinstance(exception, tenacity.RetryError):
        return upstream_error(exception.last_attempt.exception(), url)
    return UpstreamUnavailable(f"Request to {url} failed: {exception}")


class SoundsClient:
    """
    Client for the BBC Sounds platform APIs.

    Wraps one ``httpx.AsyncClient``; every request goes through
    ``fetch_with_retry`` and failures surface as ``SoundsProxyError`` subclasses.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client or create_httpx_client()

    async def __aenter__(self) -> "SoundsClient":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def request(self, method: str, url: str, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        try:
            return await fetch_with_retry(self.client, method, url, headers, **kwargs)
        except (httpx.HTTPStatusError, DownloadError, tenacity.RetryError) as e:
            raise upstream_error(e, url) from e

    async def get_bytes(self, url: str, headers: Optional[dict] = None) -> bytes:
        response = await self.request("GET", url, headers)
        return response.content

    async def get_text(self, url: str) -> tuple[str, str]:
        """Fetch a text document, returning it with the final URL after redirects."""
        response = await self.request("GET", url)
        return response.text, str(response.url)

    async def get_media(self, pid: str) -> MediaList:
        url = MEDIA_SELECTOR_URL.format(pid=quote(pid, safe=""))
        response = await self.request("GET", url)
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Unexpected data from BBC for {pid}: {e}")
        if isinstance(payload, dict) and "media" not in payload and payload.get("result"):
            # The media selector reports unknown or withdrawn pids as a result code
            raise NotFound(f"No media for {pid}: {payload['result']}")
        try:
            return MediaList.model_validate(payload)
        except ValidationError as e:
            raise UpstreamUnavailable(f"Unexpected data from BBC for {pid}: {e}")

    async def get_container(self, series_pid: str) -> ContainerResponse:
        urn = SERIES_URN.format(pid=series_pid)
        url = RMS_CONTAINER_URL.format(urn=quote(urn, safe=""))
        response = await self.request("GET", url)
        try:
            return ContainerResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise UpstreamUnavailable(f"Unexpected data from BBC for {series_pid}: {e}")

    async def get_public_media_url(self, pid: str) -> Optional[str]:
        """Return the public MP3 URL of an episode, or None when it is only available as HLS."""
        url = PUBLIC_MEDIA_URL.format(pid=quote(pid, safe=""))
        try:
            response = await self.client.head(url, follow_redirects=True)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Request to {url} failed: {e}") from e
        logger.debug(f"Public media check for {pid}: {response.status_code}")
        if response.status_code == 200:
            return url
        return None
