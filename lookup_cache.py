import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

T = TypeVar("T")


@dataclass
class _CacheEntry(Generic[T]):
    expires_at: float
    stored_at: float
    value: T


class TTLCache(Generic[T]):
    """Small in-memory cache with per-entry expiry.

    Expired entries are kept until overwritten or invalidated so callers can
    fall back to stale data when a refresh fails. ``clock`` is injectable so
    tests can move time forward without sleeping.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.time) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, _CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[T]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry and entry.expires_at > now:
                return entry.value
        return None

    def get_stale(self, key: Hashable) -> Optional[T]:
        """Return the stored value even if it has expired."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry else None

    def set(self, key: Hashable, value: T, *, ttl: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = _CacheEntry(
                expires_at=now + (ttl if ttl is not None else self.ttl),
                stored_at=now,
                value=value,
            )

    def age(self, key: Hashable) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return self._clock() - entry.stored_at

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one entry, or every entry when ``key`` is omitted."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def live_keys(self) -> List[Any]:
        now = self._clock()
        with self._lock:
            return [key for key, entry in self._entries.items() if entry.expires_at > now]

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None
