# clinic_booking/services/kv_store.py
"""
Key-value storage for guard counters and bootstrap configuration.

Values are JSON-serialisable structures. Two backends:
- InMemoryKeyValueStore: tests, single-process use
- RedisKeyValueStore: persistent, shared between processes

Sliding-window counters (`add_to_window` / `count_window`) are separate
from plain values: Redis keeps them in a sorted set scored by timestamp
and updates them in one MULTI/EXEC, so concurrent processes never lose
an attempt.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable

from redis import Redis, RedisError

from ..exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Local key-value persistence (not synced with the remote store)."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value, optionally expiring after `ttl` seconds."""

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys, return number removed."""

    def add_to_window(self, key: str, record: dict, timestamp: float, window: int) -> int:
        """
        Append a record to a sliding window, dropping records older than
        `timestamp - window`.

        Returns:
            Number of records in the window, the new one included
        """
        cutoff = timestamp - window
        records = [r for r in (self.get(key) or []) if r.get("timestamp", 0) > cutoff]
        records.append({**record, "timestamp": timestamp})
        self.set(key, records, ttl=window)
        return len(records)

    def count_window(self, key: str, since: float) -> int:
        """Number of window records newer than `since`."""
        return sum(1 for r in (self.get(key) or []) if r.get("timestamp", 0) > since)


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store. Expiry is checked on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def get(self, key: str) -> Any | None:
        item = self._data.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        # Round-trip through JSON so callers never share mutable state with the store
        self._data[key] = (json.dumps(value), expires_at)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed


class RedisKeyValueStore(KeyValueStore):
    """Redis wrapper storing JSON strings under a key prefix."""

    def __init__(self, redis: Redis, prefix: str = "clinic_booking"):
        self.redis = redis
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Any | None:
        try:
            raw = self.redis.get(self._key(key))
        except RedisError as e:
            raise StorageUnavailableError(f"Redis GET failed: {e}") from e
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON in key-value store: {key}")
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(value), ex=int(ttl) if ttl else None)
        except RedisError as e:
            raise StorageUnavailableError(f"Redis SET failed: {e}") from e

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return self.redis.delete(*(self._key(k) for k in keys))
        except RedisError as e:
            raise StorageUnavailableError(f"Redis DEL failed: {e}") from e

    def add_to_window(self, key: str, record: dict, timestamp: float, window: int) -> int:
        rkey = self._key(key)
        member = json.dumps({**record, "timestamp": timestamp, "nonce": uuid.uuid4().hex})
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zremrangebyscore(rkey, "-inf", timestamp - window)
            pipe.zadd(rkey, {member: timestamp})
            pipe.zcard(rkey)
            pipe.expire(rkey, int(window))
            _, _, count, _ = pipe.execute()
        except RedisError as e:
            raise StorageUnavailableError(f"Redis window update failed: {e}") from e
        return count

    def count_window(self, key: str, since: float) -> int:
        try:
            return self.redis.zcount(self._key(key), f"({since}", "+inf")
        except RedisError as e:
            raise StorageUnavailableError(f"Redis ZCOUNT failed: {e}") from e
