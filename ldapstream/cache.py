"""
Time-to-live cache for whole search results.
"""

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass

from .models import DirectoryRecord, SearchSpec
from .typing import Clock

logger = logging.getLogger("django-ldapstream")


def normalize_key(key: "str | SearchSpec") -> str:
    """
    Return the cache key for ``key``: a :class:`~ldapstream.models.SearchSpec`
    becomes its signature, and strings are stripped and case folded.
    """
    if isinstance(key, SearchSpec):
        return key.signature
    return key.strip().casefold()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    expires_at: float
    records: tuple[DirectoryRecord, ...]


class ResultCache:
    """
    A thread-safe map from query signature to search results, where each
    entry expires ``ttl`` seconds after it was stored.

    Expired entries are only removed when a lookup finds them; there is no
    background sweeper.

    Keyword Args:
        clock: monotonic clock, injectable for tests

    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: "str | SearchSpec") -> tuple[DirectoryRecord, ...] | None:
        """
        Return the records cached under ``key``, or ``None`` on a miss.  An
        entry whose expiry time has been reached counts as a miss and is
        evicted.
        """
        key = normalize_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self.clock() >= entry.expires_at:
                del self._entries[key]
                logger.debug("ldapstream.cache.expired key=%s", key)
                return None
            return entry.records

    def put(
        self, key: "str | SearchSpec", records: Iterable[DirectoryRecord], ttl: float
    ) -> None:
        """
        Store ``records`` under ``key`` for ``ttl`` seconds, replacing any
        existing entry.  A ``ttl`` of zero or less stores nothing.
        """
        if ttl <= 0:
            return
        key = normalize_key(key)
        entry = CacheEntry(key, self.clock() + ttl, tuple(records))
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: "str | SearchSpec") -> None:
        with self._lock:
            self._entries.pop(normalize_key(key), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        """
        The number of stored entries, including expired ones not yet evicted.
        """
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: "str | SearchSpec") -> bool:
        return self.get(key) is not None
