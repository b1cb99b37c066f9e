"""In-process read cache for job, product, and price-history reads."""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

JOBS_PATTERN = "import-history:*"
PRODUCTS_PATTERN = "products:*"
PRICE_HISTORY_PATTERN = "price-history:*"


class CacheInvalidator(Protocol):
    """Drops stale read-side entries after writes."""

    def clear_by_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern and return how many were removed."""
        raise NotImplementedError


class ReadCache:
    """Thread-safe key/value cache with per-entry expiry."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> object | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: object, *, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached  # type: ignore[return-value]
        value = loader()
        self.set(key, value)
        return value

    def clear_by_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Cleared %d cache entries for pattern %s", len(doomed), pattern)
        return len(doomed)


def invalidate_catalog(invalidator: CacheInvalidator) -> None:
    """Drop product and price-history reads after a successful import."""

    invalidator.clear_by_pattern(PRODUCTS_PATTERN)
    invalidator.clear_by_pattern(PRICE_HISTORY_PATTERN)
