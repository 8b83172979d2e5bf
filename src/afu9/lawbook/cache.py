"""
Short-TTL read-through cache for the active lawbook.

The cache is owned by whoever constructs it (typically one per request or
per worker loop iteration). It never outlives its owner, so a lawbook
activation is picked up within ``ttl_seconds`` at most.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

import structlog
from cachetools import TTLCache  # type: ignore[import-untyped]

from afu9.lawbook.repository import LawbookVersionRecord

logger = structlog.get_logger()

Loader = Callable[[], Awaitable[LawbookVersionRecord | None]]

_ACTIVE = "active"


class LawbookCache:
    """Caches the result of ``loader`` (including "not configured") for ``ttl_seconds``."""

    def __init__(
        self,
        loader: Loader,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl_seconds, timer=clock)
        self._last_hash: str | None = None

    async def get(self) -> LawbookVersionRecord | None:
        if _ACTIVE in self._cache:
            return self._cache[_ACTIVE]

        value = await self._loader()
        current_hash = value.lawbook_hash if value else None
        if current_hash != self._last_hash:
            logger.info(
                "lawbook_cache_refreshed",
                previous_hash=self._last_hash,
                current_hash=current_hash,
            )
        self._last_hash = current_hash
        self._cache[_ACTIVE] = value
        return value

    def invalidate(self) -> None:
        self._cache.clear()
