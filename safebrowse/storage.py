"""
Backing key-value store

The replica keeps all of its state in a Redis-shaped store: scalar values
with optional expiry, sets, lists, key enumeration and atomic batches.
Two backends implement the interface:

- RedisStore: redis.asyncio client, batches run as MULTI/EXEC pipelines
- MemoryStore: in-process dictionaries for tests and single-process use
"""

import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .errors import StoreError

logger = logging.getLogger(__name__)


class StoreBatch(ABC):
    """Write operations queued and applied as one atomic unit"""

    @abstractmethod
    def set(self, key: str, value: str, ex: Optional[int] = None) -> "StoreBatch":
        pass

    @abstractmethod
    def delete(self, *keys: str) -> "StoreBatch":
        pass

    @abstractmethod
    def sadd(self, key: str, *members: str) -> "StoreBatch":
        pass

    @abstractmethod
    def srem(self, key: str, *members: str) -> "StoreBatch":
        pass

    @abstractmethod
    def rpush(self, key: str, *values: str) -> "StoreBatch":
        pass

    @abstractmethod
    def lset(self, key: str, index: int, value: str) -> "StoreBatch":
        pass

    @abstractmethod
    def lrem(self, key: str, count: int, value: str) -> "StoreBatch":
        pass

    @abstractmethod
    async def execute(self) -> None:
        """Apply every queued operation, or none of them"""
        pass


class KeyValueStore(ABC):
    """Abstract backing store"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    async def sismember(self, key: str, member: str) -> bool:
        pass

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        pass

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        pass

    @abstractmethod
    async def llen(self, key: str) -> int:
        pass

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        pass

    @abstractmethod
    def batch(self) -> StoreBatch:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


# ============= In-Memory Backend =============


class MemoryBatch(StoreBatch):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._operations: List[Callable[[], None]] = []

    def set(self, key, value, ex=None):
        self._operations.append(lambda: self._store._set(key, value, ex))
        return self

    def delete(self, *keys):
        self._operations.append(lambda: self._store._delete(*keys))
        return self

    def sadd(self, key, *members):
        self._operations.append(lambda: self._store._sadd(key, *members))
        return self

    def srem(self, key, *members):
        self._operations.append(lambda: self._store._srem(key, *members))
        return self

    def rpush(self, key, *values):
        self._operations.append(lambda: self._store._rpush(key, *values))
        return self

    def lset(self, key, index, value):
        self._operations.append(lambda: self._store._lset(key, index, value))
        return self

    def lrem(self, key, count, value):
        self._operations.append(lambda: self._store._lrem(key, count, value))
        return self

    async def execute(self) -> None:
        # No await between operations, so readers never see a partial batch.
        snapshot = self._store._snapshot()
        try:
            for operation in self._operations:
                operation()
        except StoreError:
            self._store._restore(snapshot)
            raise
        finally:
            self._operations = []


class MemoryStore(KeyValueStore):
    """
    In-process store with Redis semantics.

    Keys expire lazily on access. Empty sets and lists disappear, as in Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._lists: Dict[str, List[str]] = {}
        self.closed = False

    # ----- synchronous primitives shared by batches -----

    def _snapshot(self):
        return (
            dict(self._values),
            {key: set(members) for key, members in self._sets.items()},
            {key: list(values) for key, values in self._lists.items()},
        )

    def _restore(self, snapshot) -> None:
        self._values, self._sets, self._lists = snapshot

    def _expired(self, key: str) -> bool:
        entry = self._values.get(key)
        if entry is None:
            return False
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return True
        return False

    def _set(self, key: str, value: str, ex: Optional[int]) -> None:
        self._delete(key)
        expires_at = self._clock() + ex if ex is not None else None
        self._values[key] = (str(value), expires_at)

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for container in (self._values, self._sets, self._lists):
                if container.pop(key, None) is not None:
                    removed += 1
        return removed

    def _sadd(self, key: str, *members: str) -> int:
        members_set = self._sets.setdefault(key, set())
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    def _srem(self, key: str, *members: str) -> int:
        members_set = self._sets.get(key)
        if not members_set:
            return 0
        before = len(members_set)
        members_set.difference_update(members)
        if not members_set:
            del self._sets[key]
        return before - len(members_set)

    def _rpush(self, key: str, *values: str) -> int:
        values_list = self._lists.setdefault(key, [])
        values_list.extend(values)
        return len(values_list)

    def _lset(self, key: str, index: int, value: str) -> None:
        values_list = self._lists.get(key)
        if values_list is None:
            raise StoreError(f"No such key: {key}")
        try:
            values_list[index] = value
        except IndexError as e:
            raise StoreError(f"Index {index} out of range for {key}") from e

    def _lrem(self, key: str, count: int, value: str) -> int:
        values_list = self._lists.get(key)
        if not values_list:
            return 0
        removed = 0
        if count >= 0:
            kept = []
            for item in values_list:
                if item == value and (count == 0 or removed < count):
                    removed += 1
                    continue
                kept.append(item)
        else:
            kept = []
            for item in reversed(values_list):
                if item == value and removed < -count:
                    removed += 1
                    continue
                kept.append(item)
            kept.reverse()
        if kept:
            self._lists[key] = kept
        else:
            del self._lists[key]
        return removed

    # ----- KeyValueStore -----

    async def get(self, key: str) -> Optional[str]:
        if self._expired(key):
            return None
        entry = self._values.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._set(key, value, ex)

    async def delete(self, *keys: str) -> int:
        return self._delete(*keys)

    async def sadd(self, key: str, *members: str) -> int:
        return self._sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._srem(key, *members)

    async def sismember(self, key: str, member: str) -> bool:
        return member in self._sets.get(key, ())

    async def smembers(self, key: str) -> Set[str]:
        return set(self._sets.get(key, ()))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        values_list = self._lists.get(key, [])
        # Redis ranges are inclusive, -1 means the last element.
        stop = len(values_list) if stop == -1 else stop + 1
        return list(values_list[start:stop])

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, ()))

    async def keys(self, pattern: str) -> List[str]:
        for key in list(self._values):
            self._expired(key)
        every_key = set(self._values) | set(self._sets) | set(self._lists)
        return sorted(key for key in every_key if fnmatch.fnmatchcase(key, pattern))

    def batch(self) -> StoreBatch:
        return MemoryBatch(self)

    async def close(self) -> None:
        self.closed = True


# ============= Redis Backend =============


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except RedisError as e:
        raise StoreError(f"Redis {operation} failed: {e}") from e


class RedisBatch(StoreBatch):
    def __init__(self, client: "redis.Redis"):
        self._pipeline = client.pipeline(transaction=True)

    def set(self, key, value, ex=None):
        self._pipeline.set(key, value, ex=ex)
        return self

    def delete(self, *keys):
        self._pipeline.delete(*keys)
        return self

    def sadd(self, key, *members):
        self._pipeline.sadd(key, *members)
        return self

    def srem(self, key, *members):
        self._pipeline.srem(key, *members)
        return self

    def rpush(self, key, *values):
        self._pipeline.rpush(key, *values)
        return self

    def lset(self, key, index, value):
        self._pipeline.lset(key, index, value)
        return self

    def lrem(self, key, count, value):
        self._pipeline.lrem(key, count, value)
        return self

    async def execute(self) -> None:
        with _redis_errors("batch"):
            await self._pipeline.execute()


class RedisStore(KeyValueStore):
    """Store backed by a Redis server through redis.asyncio"""

    def __init__(self, client: "redis.Redis"):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        logger.info(f"Connecting to Redis at {url}")
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        with _redis_errors("GET"):
            return await self._redis.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        with _redis_errors("SET"):
            await self._redis.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _redis_errors("DEL"):
            return await self._redis.delete(*keys)

    async def sadd(self, key: str, *members: str) -> int:
        with _redis_errors("SADD"):
            return await self._redis.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        with _redis_errors("SREM"):
            return await self._redis.srem(key, *members)

    async def sismember(self, key: str, member: str) -> bool:
        with _redis_errors("SISMEMBER"):
            return bool(await self._redis.sismember(key, member))

    async def smembers(self, key: str) -> Set[str]:
        with _redis_errors("SMEMBERS"):
            return set(await self._redis.smembers(key))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with _redis_errors("LRANGE"):
            return list(await self._redis.lrange(key, start, stop))

    async def llen(self, key: str) -> int:
        with _redis_errors("LLEN"):
            return await self._redis.llen(key)

    async def keys(self, pattern: str) -> List[str]:
        with _redis_errors("SCAN"):
            return sorted([key async for key in self._redis.scan_iter(match=pattern)])

    def batch(self) -> StoreBatch:
        return RedisBatch(self._redis)

    async def close(self) -> None:
        with _redis_errors("close"):
            await self._redis.aclose()
