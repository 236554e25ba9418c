"""
Time-bounded cache for expensive repository reads.

One instance per engine, passed to whatever needs it. Entries are keyed
by (cache kind, repository path); each entry remembers the path it was
computed for so a hit requires both freshness and a path match.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    data: Any
    timestamp: float  # Milliseconds from the cache clock
    repo_path: str


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def _key_path(repo_path) -> str:
    return str(Path(repo_path))


def _detached(data: Any) -> Any:
    # Callers get their own copy; editing it never reaches the stored entry
    return copy.deepcopy(data)


class RepositoryCache:
    """Per-kind TTL cache keyed by repository path.

    When a kind holds more than max_entries, the oldest entries are evicted
    until it holds low_watermark entries.
    """

    def __init__(
        self,
        max_entries: int = 64,
        low_watermark: int = 48,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        if low_watermark >= max_entries:
            raise ValueError("low_watermark must be below max_entries")
        self.max_entries = max_entries
        self.low_watermark = low_watermark
        self._clock = clock
        self._kinds: dict[str, dict[str, CacheEntry]] = {}
        self._lock = threading.RLock()

    def get(self, kind: str, repo_path, ttl_ms: float) -> tuple[bool, Any]:
        """Return (hit, data) without computing anything."""
        path = _key_path(repo_path)
        with self._lock:
            entry = self._kinds.get(kind, {}).get(path)
            if entry is None:
                return False, None
            if entry.repo_path != path or self._clock() - entry.timestamp >= ttl_ms:
                return False, None
            return True, _detached(entry.data)

    def put(self, kind: str, repo_path, data: Any) -> None:
        path = _key_path(repo_path)
        with self._lock:
            bucket = self._kinds.setdefault(kind, {})
            bucket[path] = CacheEntry(data=data, timestamp=self._clock(), repo_path=path)
            if len(bucket) > self.max_entries:
                self._evict(kind, bucket)

    def get_or_compute(self, kind: str, repo_path, ttl_ms: float, compute: Callable[[], T]) -> T:
        """
        Return the cached value for (kind, repo_path) or compute and store it.

        compute is not called on a hit. Exceptions from compute propagate and
        nothing is stored.
        """
        hit, data = self.get(kind, repo_path, ttl_ms)
        if hit:
            return data
        data = compute()
        self.put(kind, repo_path, data)
        return _detached(data)

    def invalidate(self, repo_path, kind: str | None = None) -> None:
        """Drop one kind (or every kind) for a repository path."""
        path = _key_path(repo_path)
        with self._lock:
            kinds = [kind] if kind is not None else list(self._kinds)
            for k in kinds:
                self._kinds.get(k, {}).pop(path, None)
        logger.debug(f"[CACHE] invalidated {kind or 'all'} for {path}")

    def clear(self) -> None:
        with self._lock:
            self._kinds.clear()

    def size(self, kind: str) -> int:
        with self._lock:
            return len(self._kinds.get(kind, {}))

    def _evict(self, kind: str, bucket: dict[str, CacheEntry]) -> None:
        oldest_first = sorted(bucket.items(), key=lambda item: item[1].timestamp)
        excess = len(bucket) - self.low_watermark
        for path, _ in oldest_first[:excess]:
            del bucket[path]
        logger.debug(f"[CACHE] evicted {excess} {kind} entries")
