"""TTL caches for resolved permissions — in-process and Redis-backed.

Both caches hand out a generation token for a key. A loader takes the token
before reading the store and writes through ``set_if_generation``; any
invalidation in between changes the token and the stale write is dropped.
"""

import json
import math
import threading
import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

import redis

from permgate.core.exceptions import CacheError

V = TypeVar("V")

Generation = Tuple[int, int]

# must outlive any in-flight store read
VERSION_TTL_SECONDS = 3600


class PermissionCache(Generic[V]):
    """Thread-safe TTL cache with lazy expiry on read.

    Entries are immutable ``(value, inserted_at)`` tuples replaced as a whole,
    so a reader sees either the old entry or the new one. Expired entries are
    also swept every ``sweep_every`` writes.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1024,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if sweep_every <= 0:
            raise ValueError("sweep_every must be positive")
        self.ttl_seconds = ttl_seconds
        self.sweep_every = sweep_every
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}
        self._generations: Dict[Hashable, int] = {}
        self._epoch = 0
        self._writes = 0
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Tuple[Optional[V], bool]:
        """Return ``(value, True)`` for a live entry, ``(None, False)`` otherwise."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            value, inserted_at = entry
            if now - inserted_at >= self.ttl_seconds:
                del self._entries[key]
                return None, False
            return value, True

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._store_locked(key, value, now)

    def generation(self, key: Hashable) -> Generation:
        """Token that changes whenever ``key`` (or the whole cache) is invalidated."""
        with self._lock:
            return self._epoch, self._generations.get(key, 0)

    def set_if_generation(self, key: Hashable, value: V, generation: Generation) -> bool:
        """Store ``value`` unless ``key`` was invalidated since ``generation`` was taken."""
        now = self._clock()
        with self._lock:
            if (self._epoch, self._generations.get(key, 0)) != generation:
                return False
            self._store_locked(key, value, now)
            return True

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1

    def sweep(self) -> int:
        """Drop expired entries to bound memory. Returns the number removed."""
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now)

    def _store_locked(self, key: Hashable, value: V, now: float) -> None:
        self._entries[key] = (value, now)
        self._writes += 1
        if self._writes >= self.sweep_every:
            self._writes = 0
            self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [
            key for key, (_, inserted_at) in self._entries.items()
            if now - inserted_at >= self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _identity(value: Any) -> Any:
    return value


class RedisPermissionCache(Generic[V]):
    """Redis-backed cache with the same contract; Redis enforces the TTL.

    Values are stored as JSON. ``encode`` turns a value into JSON-able data and
    ``decode`` turns it back. Generation counters live under ``version_prefix``
    so ``invalidate_all`` never deletes them.
    """

    def __init__(
        self,
        ttl_seconds: float,
        url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
        prefix: str = "permgate:perm:",
        encode: Callable[[V], Any] = _identity,
        decode: Callable[[Any], V] = _identity,
        version_prefix: str = "permgate:version:",
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if version_prefix.startswith(prefix):
            raise ValueError("version_prefix must not fall under prefix")
        self.ttl_seconds = ttl_seconds
        self._url = url
        self._client = client
        self._prefix = prefix
        self._version_prefix = version_prefix
        self._epoch_key = f"{version_prefix}epoch"
        self._encode = encode
        self._decode = decode

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def _key(self, key: Hashable) -> str:
        return f"{self._prefix}{key}"

    def _version_key(self, key: Hashable) -> str:
        return f"{self._version_prefix}user:{key}"

    @property
    def _ttl(self) -> int:
        return max(1, math.ceil(self.ttl_seconds))

    def get(self, key: Hashable) -> Tuple[Optional[V], bool]:
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            raise CacheError("get", e) from e
        if raw is None:
            return None, False
        return self._decode(json.loads(raw)), True

    def set(self, key: Hashable, value: V) -> None:
        payload = json.dumps(self._encode(value), default=str)
        try:
            self.client.setex(self._key(key), self._ttl, payload)
        except redis.RedisError as e:
            raise CacheError("set", e) from e

    def generation(self, key: Hashable) -> Generation:
        try:
            epoch, version = self.client.mget(self._epoch_key, self._version_key(key))
        except redis.RedisError as e:
            raise CacheError("generation", e) from e
        return int(epoch or 0), int(version or 0)

    def set_if_generation(self, key: Hashable, value: V, generation: Generation) -> bool:
        """Optimistic write: WATCH the counters, compare, then SETEX in a transaction."""
        payload = json.dumps(self._encode(value), default=str)
        version_key = self._version_key(key)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(self._epoch_key, version_key)
                epoch, version = pipe.mget(self._epoch_key, version_key)
                if (int(epoch or 0), int(version or 0)) != generation:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.setex(self._key(key), self._ttl, payload)
                pipe.execute()
                return True
        except redis.WatchError:
            return False
        except redis.RedisError as e:
            raise CacheError("set_if_generation", e) from e

    def invalidate(self, key: Hashable) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.incr(self._version_key(key))
            pipe.expire(self._version_key(key), max(self._ttl, VERSION_TTL_SECONDS))
            pipe.delete(self._key(key))
            pipe.execute()
        except redis.RedisError as e:
            raise CacheError("invalidate", e) from e

    def invalidate_all(self) -> None:
        """Delete every key under this cache's prefix."""
        try:
            self.client.incr(self._epoch_key)
            keys = self.client.keys(f"{self._prefix}*")
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            raise CacheError("invalidate_all", e) from e

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
