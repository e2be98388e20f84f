from __future__ import annotations

import os
from functools import lru_cache

from .base import ChangeFeed
from .local import LocalChangeFeed


@lru_cache(maxsize=1)
def get_change_feed() -> ChangeFeed:
    provider = str(os.getenv("REALTIME_PROVIDER", "local") or "local").strip().lower()
    if provider == "local":
        return LocalChangeFeed()

    raise ValueError(f"Unsupported REALTIME_PROVIDER: {provider}")


def reset_change_feed() -> None:
    """Drop the cached feed (tests)."""
    get_change_feed.cache_clear()
