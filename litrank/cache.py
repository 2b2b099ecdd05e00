"""Bounded LRU + TTL cache for neural relevance scores."""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from loguru import logger

from . import config
from .normalize import normalize_query
from .pipeline_types import Candidate


@dataclass
class CacheEntry:
    score: float
    inserted_at: float
    last_access: float


class RelevanceCache:
    """
    Thread-safe LRU with independent TTL expiry checked on read.

    Only in-memory bookkeeping happens under the lock; callers compute
    scores outside of it.
    """

    def __init__(
        self,
        capacity: int = config.CACHE_CAPACITY,
        ttl_seconds: float = config.CACHE_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    @staticmethod
    def make_key(query: str, candidate: Candidate) -> str:
        raw = f"{normalize_query(query)}::{candidate.identity}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[float]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if now - entry.inserted_at >= self.ttl_seconds:
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                return None
            entry.last_access = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.score

    def put(self, key: str, score: float) -> None:
        now = self._clock()
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = CacheEntry(score=float(score), inserted_at=now, last_access=now)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self.evictions += 1

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Entry without touching recency or counters (diagnostics/tests)."""
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Relevance cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "expirations": self.expirations,
                "hit_rate": (self.hits / lookups) if lookups else 0.0,
            }
