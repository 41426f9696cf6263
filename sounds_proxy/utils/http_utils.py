import logging
import typing
from functools import partial

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.types import Receive, Send, Scope
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from sounds_proxy.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient configured from the transport settings.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments. Passing ``transport`` skips the configured mounts.

    Returns:
        httpx.AsyncClient: Configured client sending the platform user agent.
    """
    if "transport" not in kwargs:
        kwargs.setdefault("mounts", settings.transport_config.get_mounts())
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    headers = {"User-Agent": settings.user_agent}
    headers.update(kwargs.pop("headers", None) or {})
    return httpx.AsyncClient(follow_redirects=follow_redirects, headers=headers, **kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type(DownloadError),
)
async def fetch_with_retry(client, method, url, headers=None, follow_redirects=True, **kwargs):
    """
    Fetch a URL with retry logic.

    Timeouts, connection failures and 5xx responses are retried; other
    client errors are raised immediately as ``httpx.HTTPStatusError``.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method (e.g., GET, HEAD).
        url (str): Target URL.
        headers (dict): Request headers.
        follow_redirects (bool): Whether to follow redirects.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request keeps failing after retries.
    """
    try:
        response = await client.request(method, url, headers=headers, follow_redirects=follow_redirects, **kwargs)
        response.raise_for_status()
        return response
    except httpx.TimeoutException:
        logger.warning(f"Timeout while downloading {url}")
        raise DownloadError(504, f"Timeout while downloading {url}")
    except httpx.HTTPStatusError as e:
        status_code = e.response.status_code
        logger.error(f"HTTP error {status_code} while downloading {url}")
        if status_code < 500 and status_code not in (408, 429):
            raise e
        raise DownloadError(status_code, f"HTTP error {status_code} while downloading {url}")
    except httpx.RequestError as e:
        logger.error(f"Error downloading {url}: {e}")
        raise DownloadError(502, f"Error downloading {url}: {e}")


class EnhancedStreamingResponse(Response):
    """
    Streaming response that holds back the status line until the body produces its first chunk.

    Errors raised before the first chunk become a plain-text response carrying the
    error's ``status_code`` (502 when it has none). Errors raised after streaming
    started abort the connection instead of finishing the chunked body, so clients
    can tell a failed stream from a complete one.
    """

    body_iterator: typing.AsyncIterable[bytes]

    def __init__(
        self,
        content: typing.AsyncIterable[bytes],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    logger.debug("Client disconnected")
                    break
        except Exception as e:
            logger.error(f"Error in listen_for_disconnect: {str(e)}")

    async def _send_error(self, send: Send, exception: Exception) -> None:
        status_code = getattr(exception, "status_code", 502)
        message = getattr(exception, "message", None) or str(exception)
        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [(b"content-type", b"text/plain; charset=utf-8")],
            }
        )
        await send({"type": "http.response.body", "body": message.encode("utf-8"), "more_body": False})

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body in chunks and handle protocol edge cases gracefully.
        """
        iterator = self.body_iterator.__aiter__()
        try:
            try:
                first_chunk = await iterator.__anext__()
            except StopAsyncIteration:
                first_chunk = b""
            except Exception as e:
                logger.error(f"Stream failed before any data was sent: {e}")
                await self._send_error(send, e)
                return

            headers = [h for h in self.raw_headers if h[0].lower() != b"content-length"]
            await send({"type": "http.response.start", "status": self.status_code, "headers": headers})

            chunk = first_chunk
            while True:
                if chunk:
                    try:
                        await send({"type": "http.response.body", "body": chunk, "more_body": True})
                        self.actual_content_length += len(chunk)
                    except (ConnectionResetError, anyio.BrokenResourceError):
                        logger.info("Client disconnected during streaming")
                        return
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    logger.error(f"Aborting stream after {self.actual_content_length} bytes: {e}")
                    raise

            await send({"type": "http.response.body", "body": b"", "more_body": False})
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with anyio.CancelScope(shield=True):
                    await aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:
            streaming_completed = False
            stream_func = partial(self.stream_response, send)
            listen_func = partial(self.listen_for_disconnect, receive)

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                try:
                    await func()
                    if func == stream_func:
                        nonlocal streaming_completed
                        streaming_completed = True
                except Exception as e:
                    if isinstance(e, (httpx.RemoteProtocolError, h11.LocalProtocolError)):
                        logger.warning(f"Protocol error during streaming: {e}")
                    elif not isinstance(e, anyio.get_cancelled_exc_class()):
                        raise
                finally:
                    if func == listen_func or streaming_completed:
                        task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, stream_func)
            await wrap(listen_func)

        if self.background is not None:
            await self.background()
