"""
Cache store used by the matching engine.

Provides a small key-value interface with TTL support for explanation
caching, quota counters and the daily AI-spend counter. Production runs on
Redis; tests and local development can use the in-memory implementation.

Features:
- Get/set with TTL, atomic integer and float increments
- Set members for the fingerprint indexes used by targeted invalidation
- Delete by glob pattern for bulk invalidation
- Atomic quota slot reservation (reserve / commit / release)
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, Callable, Iterator, Optional, Set
import logging
import threading
import time

import redis

from backend.core.config import settings
from backend.core.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class CacheStore(ABC):
    """Key-value store with TTL, atomic counters and quota reservations."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the string value for a key, or None if missing or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store a string value, optionally expiring after ``ttl_seconds``."""

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys. Returns the number of keys removed."""

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number removed."""

    @abstractmethod
    def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        """
        Atomically increment an integer counter.

        The TTL is only applied when the increment creates the key, so a
        counter keeps the expiry of its first write.
        """

    @abstractmethod
    def incrbyfloat(self, key: str, amount: float, ttl_seconds: Optional[int] = None) -> float:
        """Atomically increment a float counter. TTL semantics as ``incr``."""

    @abstractmethod
    def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> None:
        """Add members to a set, refreshing its TTL when given."""

    @abstractmethod
    def smembers(self, key: str) -> Set[str]:
        """Return all members of a set (empty when missing)."""

    @abstractmethod
    def srem(self, key: str, *members: str) -> None:
        """Remove members from a set."""

    @abstractmethod
    def reserve_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        reservation_ttl_seconds: int,
        key_ttl_seconds: int,
    ) -> bool:
        """
        Atomically reserve one usage slot.

        Admits the reservation only if committed usage plus live (unexpired)
        reservations is below ``limit``. Check and reservation happen in a
        single atomic step. Reserving a token that is still live renews its
        lifetime and always succeeds.

        Args:
            used_key: Counter of committed usage
            pending_key: Collection of in-flight reservations
            token: Unique reservation identifier
            limit: Maximum allowed usage for the period
            reservation_ttl_seconds: Lifetime of an uncommitted reservation
            key_ttl_seconds: Expiry applied to the period keys

        Returns:
            True if the slot was reserved, False if the limit is reached
        """

    @abstractmethod
    def commit_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        key_ttl_seconds: int,
    ) -> Optional[int]:
        """
        Convert a reservation into committed usage.

        A live reservation is always converted. An expired one is converted
        only if committed usage plus the remaining live reservations is still
        below ``limit``; otherwise nothing is charged.

        Returns:
            The new usage count, or None if the commit was refused
        """

    @abstractmethod
    def release_slot(self, pending_key: str, token: str) -> None:
        """Drop a reservation without charging usage."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the store is reachable."""

    def get_int(self, key: str) -> int:
        value = self.get(key)
        return int(value) if value is not None else 0

    def get_float(self, key: str) -> float:
        value = self.get(key)
        return float(value) if value is not None else 0.0


class InMemoryCacheStore(CacheStore):
    """
    Process-local cache store.

    Every operation runs under one lock, which also makes the quota
    reservation atomic across threads. Entries expire lazily on access.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        # key -> (value, expires_at or None)
        self._data: dict[str, tuple[Any, Optional[float]]] = {}

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _lookup(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _live_pending(self, pending_key: str) -> dict[str, float]:
        pending = self._lookup(pending_key) or {}
        now = self._clock()
        live = {token: exp for token, exp in pending.items() if exp > now}
        if pending_key in self._data:
            self._data[pending_key] = (live, self._data[pending_key][1])
        return live

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._lookup(key)
            if value is None or not isinstance(value, str):
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._lookup(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in list(self._data) if fnmatchcase(k, pattern)]
            for key in keys:
                del self._data[key]
        if keys:
            logger.debug(f"Deleted {len(keys)} cache entries matching: {pattern}")
        return len(keys)

    def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            current = self._lookup(key)
            if current is None:
                new_value = amount
                self._data[key] = (str(new_value), self._expiry(ttl_seconds))
            else:
                new_value = int(current) + amount
                self._data[key] = (str(new_value), self._data[key][1])
            return new_value

    def incrbyfloat(self, key: str, amount: float, ttl_seconds: Optional[int] = None) -> float:
        with self._lock:
            current = self._lookup(key)
            if current is None:
                new_value = float(amount)
                self._data[key] = (repr(new_value), self._expiry(ttl_seconds))
            else:
                new_value = float(current) + amount
                self._data[key] = (repr(new_value), self._data[key][1])
            return new_value

    def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            current = self._lookup(key)
            members_set = set(current) if isinstance(current, set) else set()
            members_set.update(members)
            expires_at = self._expiry(ttl_seconds) if ttl_seconds else (
                self._data[key][1] if key in self._data else None
            )
            self._data[key] = (members_set, expires_at)

    def smembers(self, key: str) -> Set[str]:
        with self._lock:
            current = self._lookup(key)
            return set(current) if isinstance(current, set) else set()

    def srem(self, key: str, *members: str) -> None:
        with self._lock:
            current = self._lookup(key)
            if not isinstance(current, set):
                return
            current.difference_update(members)
            if not current:
                del self._data[key]

    def reserve_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        reservation_ttl_seconds: int,
        key_ttl_seconds: int,
    ) -> bool:
        with self._lock:
            used = int(self._lookup(used_key) or 0)
            pending = self._live_pending(pending_key)
            if token not in pending and used + len(pending) >= limit:
                return False
            pending[token] = self._clock() + reservation_ttl_seconds
            self._data[pending_key] = (pending, self._expiry(key_ttl_seconds))
            return True

    def commit_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        key_ttl_seconds: int,
    ) -> Optional[int]:
        with self._lock:
            pending = self._live_pending(pending_key)
            used = int(self._lookup(used_key) or 0)
            if pending.pop(token, None) is None and used + len(pending) >= limit:
                return None
            used += 1
            self._data[used_key] = (str(used), self._expiry(key_ttl_seconds))
            return used

    def release_slot(self, pending_key: str, token: str) -> None:
        with self._lock:
            pending = self._live_pending(pending_key)
            pending.pop(token, None)

    def ping(self) -> bool:
        return True

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
        logger.info(f"Cache cleared: {count} entries removed")
        return count


# Pending reservations live in a sorted set scored by their expiry time.
_RESERVE_SCRIPT = """
local now = tonumber(ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now)
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
local pending = redis.call('ZCARD', KEYS[2])
local held = redis.call('ZSCORE', KEYS[2], ARGV[2])
if not held and used + pending >= tonumber(ARGV[3]) then
    return 0
end
redis.call('ZADD', KEYS[2], now + tonumber(ARGV[4]), ARGV[2])
redis.call('EXPIRE', KEYS[2], tonumber(ARGV[5]))
return 1
"""

# Returns -1 when an expired reservation no longer fits under the limit.
_COMMIT_SCRIPT = """
local now = tonumber(ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now)
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
if redis.call('ZREM', KEYS[2], ARGV[2]) == 0 then
    local pending = redis.call('ZCARD', KEYS[2])
    if used + pending >= tonumber(ARGV[3]) then
        return -1
    end
end
used = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))
return used
"""

_INCR_SCRIPT = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
if tonumber(ARGV[2]) > 0 and redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return value
"""

_INCRBYFLOAT_SCRIPT = """
local value = redis.call('INCRBYFLOAT', KEYS[1], ARGV[1])
if tonumber(ARGV[2]) > 0 and redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return value
"""


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except redis.RedisError as e:
        logger.warning(f"Redis {operation} failed: {e}")
        raise CacheUnavailableError(f"cache {operation} failed: {e}") from e


class RedisCacheStore(CacheStore):
    """Redis-backed cache store. Redis errors surface as CacheUnavailableError."""

    def __init__(self, client: redis.Redis, clock: Callable[[], float] = time.time):
        self.client = client
        self._clock = clock
        self._reserve = client.register_script(_RESERVE_SCRIPT)
        self._commit = client.register_script(_COMMIT_SCRIPT)
        self._incr = client.register_script(_INCR_SCRIPT)
        self._incrbyfloat = client.register_script(_INCRBYFLOAT_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        with _redis_errors("get"):
            return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with _redis_errors("set"):
            self.client.set(key, value, ex=ttl_seconds or None)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _redis_errors("delete"):
            return int(self.client.delete(*keys))

    def delete_pattern(self, pattern: str) -> int:
        removed = 0
        with _redis_errors("delete_pattern"):
            batch: list[str] = []
            for key in self.client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += int(self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(self.client.delete(*batch))
        if removed:
            logger.debug(f"Deleted {removed} cache entries matching: {pattern}")
        return removed

    def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        with _redis_errors("incr"):
            return int(self._incr(keys=[key], args=[amount, ttl_seconds or 0]))

    def incrbyfloat(self, key: str, amount: float, ttl_seconds: Optional[int] = None) -> float:
        with _redis_errors("incrbyfloat"):
            return float(self._incrbyfloat(keys=[key], args=[amount, ttl_seconds or 0]))

    def sadd(self, key: str, *members: str, ttl_seconds: Optional[int] = None) -> None:
        if not members:
            return
        with _redis_errors("sadd"):
            pipe = self.client.pipeline()
            pipe.sadd(key, *members)
            if ttl_seconds:
                pipe.expire(key, ttl_seconds)
            pipe.execute()

    def smembers(self, key: str) -> Set[str]:
        with _redis_errors("smembers"):
            return set(self.client.smembers(key))

    def srem(self, key: str, *members: str) -> None:
        if not members:
            return
        with _redis_errors("srem"):
            self.client.srem(key, *members)

    def reserve_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        reservation_ttl_seconds: int,
        key_ttl_seconds: int,
    ) -> bool:
        with _redis_errors("reserve_slot"):
            result = self._reserve(
                keys=[used_key, pending_key],
                args=[self._clock(), token, limit, reservation_ttl_seconds, key_ttl_seconds],
            )
            return int(result) == 1

    def commit_slot(
        self,
        used_key: str,
        pending_key: str,
        token: str,
        limit: int,
        key_ttl_seconds: int,
    ) -> Optional[int]:
        with _redis_errors("commit_slot"):
            result = int(
                self._commit(
                    keys=[used_key, pending_key],
                    args=[self._clock(), token, limit, key_ttl_seconds],
                )
            )
            return None if result < 0 else result

    def release_slot(self, pending_key: str, token: str) -> None:
        with _redis_errors("release_slot"):
            self.client.zrem(pending_key, token)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


@lru_cache
def get_cache_store() -> CacheStore:
    """Get the process-wide cache store."""
    return RedisCacheStore.from_url(settings.redis_url)


__all__ = [
    "CacheStore",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "get_cache_store",
]
