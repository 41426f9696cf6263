from typing import Optional


class SoundsProxyError(Exception):
    """Base class for failures while resolving, remuxing or caching an episode."""

    status_code = 502

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(SoundsProxyError):
    status_code = 404


class UpstreamUnavailable(SoundsProxyError):
    status_code = 503

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(message)


class SegmentFetchFailed(UpstreamUnavailable):
    def __init__(self, index: int, url: str, cause: Exception):
        self.index = index
        self.url = url
        self.cause = cause
        super().__init__(
            f"Failed to fetch segment {index} ({url}): {cause}",
            upstream_status=getattr(cause, "upstream_status", None),
        )


class MalformedManifest(SoundsProxyError):
    pass


class CorruptContainer(SoundsProxyError):
    pass


class UnsupportedCodec(SoundsProxyError):
    pass


class InconsistentStreamParameters(SoundsProxyError):
    pass


class CacheBuildFailed(SoundsProxyError):
    """Raised to every consumer attached to a cache build that did not complete."""

    def __init__(self, episode_id: str, cause: BaseException):
        self.episode_id = episode_id
        self.cause = cause
        super().__init__(f"Building {episode_id} failed: {getattr(cause, 'message', None) or cause!r}")

    @property
    def status_code(self) -> int:
        if isinstance(self.cause, SoundsProxyError):
            return self.cause.status_code
        return 502
