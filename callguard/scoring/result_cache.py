"""
Result Cache - TTL and capacity bounded store of recent detection results
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from callguard.schemas.results import IntegratedResult

logger = structlog.get_logger()


@dataclass
class CacheEntry:
    result: IntegratedResult
    sender_id: str
    stored_at: float


class ResultCache:
    """
    Results keyed by sender and content hash

    Entries older than the TTL are dropped on lookup. When an insert pushes
    the cache past capacity, the single oldest entry is evicted.
    """

    def __init__(
        self,
        capacity: int = 1000,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[IntegratedResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.result

    def generation(self, sender_id: str) -> Tuple[int, int]:
        """Token that changes whenever the sender's entries are invalidated"""
        with self._lock:
            return self._epoch, self._generations.get(sender_id, 0)

    def put(self, key: str, result: IntegratedResult, generation: Optional[Tuple[int, int]] = None) -> bool:
        """
        Store a result

        When `generation` is given and the sender was invalidated since it was
        taken, the result is stale and is not stored.
        """
        with self._lock:
            current = (self._epoch, self._generations.get(result.sender_id, 0))
            if generation is not None and generation != current:
                logger.debug("Stale result not cached", key=key)
                return False
            self._entries[key] = CacheEntry(
                result=result,
                sender_id=result.sender_id,
                stored_at=self._clock()
            )
            if len(self._entries) > self.capacity:
                # Linear scan is fine at this capacity
                oldest = min(self._entries, key=lambda k: self._entries[k].stored_at)
                del self._entries[oldest]
                logger.debug("Cache entry evicted", key=oldest)
        return True

    def invalidate_sender(self, sender_id: str) -> int:
        """Drop every entry for a sender; returns how many were removed"""
        with self._lock:
            self._generations[sender_id] = self._generations.get(sender_id, 0) + 1
            keys = [k for k, e in self._entries.items() if e.sender_id == sender_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def last_for_sender(self, sender_id: str) -> Optional[IntegratedResult]:
        """Most recently stored result for a sender, expired or not"""
        with self._lock:
            entries = [e for e in self._entries.values() if e.sender_id == sender_id]
        if not entries:
            return None
        return max(entries, key=lambda e: e.stored_at).result

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
