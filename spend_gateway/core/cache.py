"""
Response cache.

In-memory TTL cache with least-recently-used eviction. The orchestrator
consults it before dispatch so a repeated request costs nothing.
"""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..providers.base import ProviderRequest

logger = structlog.get_logger(__name__)


def make_cache_key(request: ProviderRequest) -> str:
    """Stable key for a fully resolved provider request."""
    payload = json.dumps(asdict(request), sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheStats:
    """Hit, miss and eviction counters."""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "writes": self.writes,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
        }


class ResponseCache:
    """Bounded mapping of cache key to generated text.

    Entries expire ``ttl`` seconds after they were written. When full, the
    least recently read or written entry is evicted.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.max_size = max_size
        self.ttl = ttl
        self.stats = CacheStats()
        self._clock = clock
        # key -> (expires_at, content), oldest access first
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        item = self._entries.get(key)
        if item is None:
            self.stats.misses += 1
            return None

        expires_at, content = item
        if self._clock() >= expires_at:
            del self._entries[key]
            self.stats.expirations += 1
            self.stats.misses += 1
            return None

        self._entries.move_to_end(key)
        self.stats.hits += 1
        return content

    def set(self, key: str, content: str, ttl: Optional[float] = None) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        while len(self._entries) >= self.max_size and key not in self._entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            logger.debug("cache_evicted", key=evicted)
        self._entries[key] = (self._clock() + (ttl or self.ttl), content)
        self.stats.writes += 1

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clean_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self.stats.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
