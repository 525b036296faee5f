# clinic_booking/services/cache.py
"""
TTL read-through cache for appointments and settings.

Key format:
    appointments:{clinic_id}:{date}   TTL 5 min
    settings:{clinic_id}              TTL 10 min

Rules:
✓ expired entries are treated as absent (checked on read, no timers)
✓ concurrent misses for one key share a single load (single-flight)
✓ a refresh supersedes the in-flight load: the old task is cancelled and
  its waiters receive the newer result (last request wins)
✓ failures propagate and are never cached
✓ LRU cap on total entries
"""

import asyncio
import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

APPOINTMENTS_PREFIX = "appointments"
SETTINGS_PREFIX = "settings"

APPOINTMENTS_TTL = 5 * 60.0
SETTINGS_TTL = 10 * 60.0
MAX_ENTRIES = 500

_MISSING = object()


def appointments_key(clinic_id: str, target_date: date | None = None) -> str:
    if target_date is None:
        return f"{APPOINTMENTS_PREFIX}:{clinic_id}"
    return f"{APPOINTMENTS_PREFIX}:{clinic_id}:{target_date.isoformat()}"


def settings_key(clinic_id: str) -> str:
    return f"{SETTINGS_PREFIX}:{clinic_id}"


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass
class _Flight:
    generation: int
    future: asyncio.Future
    task: Optional[asyncio.Task] = None
    stale: bool = False


class AvailabilityCache:
    """In-process cache instance; compose one per scheduling service."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = MAX_ENTRIES,
        ttl_by_prefix: dict[str, float] | None = None,
        default_ttl: float = APPOINTMENTS_TTL,
    ):
        self._clock = clock
        self.max_entries = max_entries
        self.ttl_by_prefix = ttl_by_prefix or {
            APPOINTMENTS_PREFIX: APPOINTMENTS_TTL,
            SETTINGS_PREFIX: SETTINGS_TTL,
        }
        self.default_ttl = default_ttl
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._inflight: dict[str, _Flight] = {}
        self._generations: dict[str, int] = {}
        self._counter = itertools.count(1)
        self.loads = 0

    def __len__(self) -> int:
        return len(self._entries)

    def ttl_for(self, key: str) -> float:
        prefix = key.split(":", 1)[0]
        return self.ttl_by_prefix.get(prefix, self.default_ttl)

    # ── Read / write ─────────────────────────────────────────────────────

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expired(self._clock()):
            del self._entries[key]
            return _MISSING
        self._entries.move_to_end(key)
        return entry.data

    def get(self, key: str) -> Optional[Any]:
        """Return the live value, or None on miss / expiry."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def contains(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(
            data=value,
            timestamp=self._clock(),
            ttl=ttl if ttl is not None else self.ttl_for(key),
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Cache evicted LRU entry {evicted}")

    def invalidate(self, key_or_prefix: str) -> int:
        """
        Drop the exact key and every key starting with "{key_or_prefix}:".

        In-flight loads for dropped keys still answer their waiters, but
        their results are not stored.

        Returns:
            Number of removed entries
        """
        nested = f"{key_or_prefix}:"
        matched = [
            k for k in self._entries
            if k == key_or_prefix or k.startswith(nested)
        ]
        for k in matched:
            del self._entries[k]

        for k in [k for k in self._inflight if k == key_or_prefix or k.startswith(nested)]:
            flight = self._inflight.pop(k)
            flight.stale = True
            self._generations.pop(k, None)

        if matched:
            logger.debug(f"Cache invalidated {len(matched)} entries for {key_or_prefix}")
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()
        for flight in self._inflight.values():
            flight.stale = True
        self._inflight.clear()
        self._generations.clear()

    # ── Read-through ─────────────────────────────────────────────────────

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        refresh: bool = False,
    ) -> T:
        """
        Return the cached value or load it.

        Args:
            key: Cache key
            loader: Zero-argument coroutine function fetching the value
            ttl: Override the per-prefix TTL
            refresh: Ignore the cached value and supersede any in-flight load
        """
        if not refresh:
            value = self._lookup(key)
            if value is not _MISSING:
                return value
            flight = self._inflight.get(key)
            if flight is not None:
                return await asyncio.shield(flight.future)

        flight = self._start_load(key, loader, ttl)
        return await asyncio.shield(flight.future)

    def _start_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: float | None,
    ) -> _Flight:
        loop = asyncio.get_running_loop()
        generation = next(self._counter)
        self._generations[key] = generation

        flight = _Flight(generation=generation, future=loop.create_future())
        previous = self._inflight.get(key)
        self._inflight[key] = flight
        flight.task = loop.create_task(self._run_load(key, loader, ttl, flight))

        if previous is not None:
            logger.debug(
                f"Cache load for {key} superseded (gen {previous.generation} → {generation})"
            )
            previous.task.cancel()
            flight.future.add_done_callback(
                lambda done, waiting=previous.future: _forward(done, waiting)
            )
        return flight

    async def _run_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: float | None,
        flight: _Flight,
    ) -> None:
        self.loads += 1
        try:
            value = await loader()
        except asyncio.CancelledError:
            # Superseded: waiters are answered by the newer flight
            raise
        except Exception as e:
            self._finish(key, flight)
            if not flight.future.done():
                flight.future.set_exception(e)
            return

        current = self._generations.get(key) == flight.generation
        if current and not flight.stale:
            self.set(key, value, ttl)
        else:
            logger.debug(f"Discarded stale load for {key} (gen {flight.generation})")
        self._finish(key, flight)
        if not flight.future.done():
            flight.future.set_result(value)

    def _finish(self, key: str, flight: _Flight) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]
            # Later flights compare against a missing generation and are discarded
            self._generations.pop(key, None)

    def inflight(self, key: str) -> bool:
        return key in self._inflight


def _forward(source: asyncio.Future, target: asyncio.Future) -> None:
    if target.done():
        return
    if source.cancelled():
        target.cancel()
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())
