"""Cross-session cache of line ratings keyed by normalized utterance text.

Stock phrases ("Hi, how are you doing today?") repeat across thousands of
sessions. Rating them once bounds LLM spend. The cache is two-tiered: a
bounded in-process LRU in front of an optional persistent store. Store
failures degrade to a miss or a skipped write and are never raised.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from . import config
from .lru import LRUCache

LOGGER = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_phrase(text: str) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


class PhraseStore(Protocol):
    """Persistent tier contract (implemented by ``storage.SessionStorage``)."""

    def get_cached_phrase(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def put_cached_phrase(self, key: str, rating: Dict[str, Any]) -> None:
        ...

    def clear_phrase_cache(self) -> int:
        ...


@dataclass
class CachedPhrase:
    key: str
    rating: Dict[str, Any]
    origin: str = "memory"


class PhraseCache:
    """Thread-safe two-tier phrase cache."""

    def __init__(self, store: Optional[PhraseStore] = None, capacity: Optional[int] = None) -> None:
        self._memory: LRUCache[str, Dict[str, Any]] = LRUCache(capacity or config.PHRASE_CACHE_MEMORY_CAPACITY)
        self._store = store
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.store_errors = 0

    def _record(self, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def _record_store_error(self) -> None:
        with self._stats_lock:
            self.store_errors += 1

    def get(self, text: str) -> Optional[CachedPhrase]:
        """Return the cached rating for ``text`` or None on a miss."""
        key = normalize_phrase(text)
        if not key:
            return None

        rating = self._memory.get(key)
        if rating is not None:
            self._record(True)
            return CachedPhrase(key=key, rating=copy.deepcopy(rating), origin="memory")

        if self._store is not None:
            try:
                stored = self._store.get_cached_phrase(key)
            except Exception as exc:  # pylint: disable=broad-except
                self._record_store_error()
                LOGGER.warning("Phrase cache lookup failed; treating as miss: %s", exc)
                stored = None
            if stored is not None:
                self._memory.put(key, stored)
                self._record(True)
                return CachedPhrase(key=key, rating=copy.deepcopy(stored), origin="store")

        self._record(False)
        return None

    def put(self, text: str, rating: Dict[str, Any]) -> bool:
        """Store ``rating`` under the normalized form of ``text``.

        Returns False when the phrase is blank or the persistent write was
        skipped; the memory tier is populated either way.
        """
        key = normalize_phrase(text)
        if not key:
            return False
        snapshot = copy.deepcopy(dict(rating))
        self._memory.put(key, snapshot)
        if self._store is None:
            return True
        try:
            self._store.put_cached_phrase(key, snapshot)
        except Exception as exc:  # pylint: disable=broad-except
            self._record_store_error()
            LOGGER.warning("Phrase cache write skipped for %r: %s", key[:80], exc)
            return False
        return True

    def clear(self) -> int:
        """Invalidate every entry in both tiers. Returns the count removed from the store."""
        self._memory.clear()
        if self._store is None:
            return 0
        try:
            return self._store.clear_phrase_cache()
        except Exception as exc:  # pylint: disable=broad-except
            self._record_store_error()
            LOGGER.warning("Phrase cache store could not be cleared: %s", exc)
            return 0

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {
                "hits": self.hits,
                "misses": self.misses,
                "store_errors": self.store_errors,
                "memory_entries": len(self._memory),
                "memory_evictions": self._memory.evictions,
            }
