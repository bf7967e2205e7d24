"""
Process-local namespaced TTL cache.

Every derived permission answer lives here under a namespace ("permissions",
"memberships", "effective", ...) and a key made of ``:``-joined segments.
Invalidation works on whole segments, so ``invalidate("permissions", "u1")``
drops ``u1`` and ``u1:r1`` but never ``u10``.

The cache is advisory: internal failures are logged and turned into misses,
callers always recompute from the database.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from app.utils import get_logger


log = get_logger(__name__)

KEY_SEPARATOR = ":"


class _Miss:
    """Sentinel returned by ``CacheStore.get`` when nothing usable is cached."""

    _instance: Optional["_Miss"] = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def make_key(*parts: Any) -> str:
    """Join key segments, e.g. ``make_key(user_id, retreat_id)``."""
    return KEY_SEPARATOR.join(str(part) for part in parts)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    stale_writes: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "stale_writes": self.stale_writes,
            "invalidations": self.invalidations,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 4),
        }


class CacheStore:
    """
    Namespaced TTL cache.

    Usage:
        cache = CacheStore(default_ttl=300)

        token = cache.token("permissions")
        value = cache.get("permissions", make_key(user_id, retreat_id))
        if value is MISS:
            value = await compute()
            cache.set("permissions", make_key(user_id, retreat_id), value, token=token)

    The ``token`` protects against caching a value that was computed before a
    concurrent mutation invalidated the namespace: if the namespace generation
    moved on between ``token()`` and ``set()``, the write is dropped.
    """

    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: Dict[str, Dict[str, Tuple[float, Any]]] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

    # ------------------------------------------------------------------
    # Storage primitives (overridable by other backends)
    # ------------------------------------------------------------------

    def _read(self, namespace: str, key: str) -> Any:
        bucket = self._data.get(namespace)
        if not bucket:
            return MISS
        item = bucket.get(key)
        if item is None:
            return MISS
        expires_at, value = item
        if expires_at <= self._clock():
            bucket.pop(key, None)
            return MISS
        return value

    def _write(self, namespace: str, key: str, value: Any, ttl: float) -> None:
        self._data.setdefault(namespace, {})[key] = (self._clock() + ttl, value)

    def _drop(self, namespace: str, key_prefix: str) -> int:
        bucket = self._data.get(namespace)
        if not bucket:
            return 0
        if not key_prefix:
            count = len(bucket)
            bucket.clear()
            return count
        segment_prefix = key_prefix + KEY_SEPARATOR
        doomed = [key for key in bucket if key == key_prefix or key.startswith(segment_prefix)]
        for key in doomed:
            del bucket[key]
        return len(doomed)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def token(self, namespace: str) -> int:
        """Current invalidation generation of ``namespace``."""
        with self._lock:
            return self._generations.get(namespace, 0)

    def get(self, namespace: str, key: str) -> Any:
        with self._lock:
            try:
                value = self._read(namespace, key)
            except Exception:
                self._stats.errors += 1
                log.warning("Cache read failed for %s/%s, recomputing", namespace, key, exc_info=True)
                value = MISS
            if value is MISS:
                self._stats.misses += 1
            else:
                self._stats.hits += 1
            return value

    def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        token: Optional[int] = None,
    ) -> bool:
        """Store ``value``. Returns False when the write was dropped."""
        effective_ttl = self.default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            return False
        with self._lock:
            if token is not None and token != self._generations.get(namespace, 0):
                self._stats.stale_writes += 1
                log.debug("Dropped stale cache write for %s/%s", namespace, key)
                return False
            try:
                self._write(namespace, key, value, effective_ttl)
            except Exception:
                self._stats.errors += 1
                log.warning("Cache write failed for %s/%s", namespace, key, exc_info=True)
                return False
            self._stats.sets += 1
            return True

    def invalidate(self, namespace: str, key_prefix: str = "") -> int:
        """
        Drop every key in ``namespace`` equal to or segment-prefixed by
        ``key_prefix``. An empty prefix drops the whole namespace.

        The namespace generation is bumped even if the drop fails, so
        in-flight computations never repopulate it with stale data.
        """
        with self._lock:
            self._generations[namespace] = self._generations.get(namespace, 0) + 1
            self._stats.invalidations += 1
            try:
                dropped = self._drop(namespace, key_prefix)
            except Exception:
                self._stats.errors += 1
                log.warning("Cache invalidation failed for %s/%s, clearing namespace",
                            namespace, key_prefix, exc_info=True)
                self._data.pop(namespace, None)
                return 0
        log.debug("Invalidated %d cache entries in %s/%s*", dropped, namespace, key_prefix)
        return dropped

    def clear(self) -> None:
        with self._lock:
            for namespace in set(self._data) | set(self._generations):
                self._generations[namespace] = self._generations.get(namespace, 0) + 1
            self._data.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return self._stats.as_dict()
