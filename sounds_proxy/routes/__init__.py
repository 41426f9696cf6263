from .episode import episode_router
from .feed import feed_router

__all__ = ["episode_router", "feed_router"]
