"""Feed caches: key/value with TTL and prefix purge.

Both backends raise CacheError on failure; the feed treats that as a miss.
Writes are last-writer-wins.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional, Protocol

from personalization.cache_utils import atomic_write_json, evict_oldest, read_json
from personalization.constants import FEED_CACHE_MAX_FILES
from personalization.errors import CacheError


class FeedCache(Protocol):
    def get(self, key: str) -> Optional[dict[str, Any]]: ...

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    def purge_prefix(self, prefix: str) -> int: ...


class MemoryCache:
    """Process-local TTL cache."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def purge_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class FileCache:
    """One JSON file per key under cache_dir; oldest files evicted past max_files."""

    def __init__(
        self,
        cache_dir: Path,
        max_files: int = FEED_CACHE_MAX_FILES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_files = max_files
        self._clock = clock

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def get(self, key: str) -> Optional[dict[str, Any]]:
        path = self._path(key)
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            raise CacheError(f"failed to read cache entry {key}: {e}") from e
        if not data:
            return None
        if not isinstance(data, dict):
            raise CacheError(f"malformed cache entry {key}: not an object")
        if data.get("key") != key:
            return None
        try:
            expires_at = float(data.get("expires_at", 0))
        except (TypeError, ValueError) as e:
            raise CacheError(f"malformed cache entry {key}: {e}") from e
        if self._clock() >= expires_at:
            return None
        value = data.get("value")
        if not isinstance(value, dict):
            raise CacheError(f"malformed cache entry {key}: value is not an object")
        return value

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        payload = {"key": key, "expires_at": self._clock() + ttl_seconds, "value": value}
        try:
            atomic_write_json(self._path(key), payload)
            evict_oldest(self.cache_dir, "*.json", self.max_files)
        except (OSError, TypeError, ValueError) as e:
            raise CacheError(f"failed to write cache entry {key}: {e}") from e

    def purge_prefix(self, prefix: str) -> int:
        if not self.cache_dir.exists():
            return 0
        removed = 0
        try:
            for path in self.cache_dir.glob("*.json"):
                try:
                    data = read_json(path)
                except ValueError:
                    continue
                if isinstance(data, dict) and str(data.get("key", "")).startswith(prefix):
                    path.unlink(missing_ok=True)
                    removed += 1
        except OSError as e:
            raise CacheError(f"failed to purge cache prefix {prefix}: {e}") from e
        return removed
