"""Pytest configuration and fixtures."""

import asyncio
import itertools
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, AsyncIterator

import pytest

from clinic_booking.events.ledger import AppointmentLedger
from clinic_booking.events.realtime import RealtimeReconciler
from clinic_booking.exceptions import SlotConflictError, StorageUnavailableError
from clinic_booking.schemas.appointments import Appointment, AppointmentStatus
from clinic_booking.schemas.events import ChangeEvent
from clinic_booking.services.cache import AvailabilityCache
from clinic_booking.services.kv_store import InMemoryKeyValueStore, KeyValueStore
from clinic_booking.services.remote_store import APPOINTMENTS_TABLE, SETTINGS_TABLE, RemoteStore
from clinic_booking.services.slots.availability import AvailabilityService
from clinic_booking.services.slots.config import SchedulingConfigStore

CLINIC = "c1"
MONDAY = date(2026, 10, 19)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock returning float seconds."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingKeyValueStore(KeyValueStore):
    def get(self, key: str) -> Any | None:
        raise StorageUnavailableError("redis down")

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        raise StorageUnavailableError("redis down")

    def delete(self, *keys: str) -> int:
        raise StorageUnavailableError("redis down")


class FakeRedis:
    """Strings and sorted sets in dicts; pipelines run their queue in order."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiry: dict[str, int | None] = {}
        self.transactions = 0

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None or self.zsets.pop(key, None) is not None:
                removed += 1
        return removed

    def zremrangebyscore(self, key, low, high):
        zset = self.zsets.get(key, {})
        stale = [m for m, score in zset.items() if float(low) <= score <= float(high)]
        for member in stale:
            del zset[member]
        return len(stale)

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zcount(self, key, low, high):
        exclusive = str(low).startswith("(")
        bound = float(str(low).lstrip("("))
        return sum(
            1 for score in self.zsets.get(key, {}).values()
            if (score > bound if exclusive else score >= bound)
        )

    def expire(self, key, seconds):
        self.expiry[key] = seconds
        return True

    def pipeline(self, transaction=True):
        if transaction:
            self.transactions += 1
        return _FakePipeline(self)


class _FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._queue: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._queue.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._queue]


def _fmt(value: Any) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class FakeRemoteStore(RemoteStore):
    """
    In-memory stand-in for the remote store.

    - `fail_with`: raised by every call while set
    - `gate`: when set, writes wait for it before completing
    - `push(table, event)`: deliver an event on the change feed
    """

    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {APPOINTMENTS_TABLE: {}, SETTINGS_TABLE: {}}
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.feeds: dict[str, asyncio.Queue] = {}
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    def stamp(self) -> str:
        base = datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)
        return (base + timedelta(seconds=next(self._ticks))).isoformat()

    def seed(self, table: str, row: dict) -> dict:
        row = {"id": str(next(self._ids)), "updated_at": self.stamp(), **row}
        self.tables[table][str(row["id"])] = row
        return dict(row)

    async def _enter(self, *call) -> None:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    async def _wait_gate(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def list(self, table: str, **filters: Any) -> list[dict]:
        await self._enter("list", table, filters)
        return [
            dict(row) for row in self.tables[table].values()
            if all(_fmt(row.get(k)) == _fmt(v) for k, v in filters.items())
        ]

    async def create(self, table: str, record: dict) -> dict:
        await self._enter("create", table, record)
        await self._wait_gate()
        if table == APPOINTMENTS_TABLE:
            for row in self.tables[table].values():
                same_slot = all(row.get(k) == record.get(k) for k in ("clinic_id", "date", "time"))
                if same_slot and row.get("status") != AppointmentStatus.CANCELLED.value:
                    raise SlotConflictError("duplicate key value violates unique constraint", status_code=409)
        return self.seed(table, record)

    async def update(self, table: str, entity_id: str, patch: dict) -> dict:
        await self._enter("update", table, entity_id, patch)
        await self._wait_gate()
        row = self.tables[table][entity_id]
        row.update(patch)
        row["updated_at"] = self.stamp()
        return dict(row)

    async def delete(self, table: str, entity_id: str) -> None:
        await self._enter("delete", table, entity_id)
        await self._wait_gate()
        self.tables[table].pop(entity_id, None)

    async def subscribe(self, table: str) -> AsyncIterator[ChangeEvent]:
        await self._enter("subscribe", table)
        queue = self.feeds.setdefault(table, asyncio.Queue())
        return _drain(queue)

    def push(self, table: str, event: ChangeEvent) -> None:
        self.feeds.setdefault(table, asyncio.Queue()).put_nowait(event)


async def _drain(queue: asyncio.Queue) -> AsyncIterator[ChangeEvent]:
    while True:
        yield await queue.get()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_row(
    id: str = "a1",
    at: time = time(10, 0),
    on: date = MONDAY,
    clinic_id: str = CLINIC,
    status: AppointmentStatus = AppointmentStatus.CONFIRMED,
    updated_at: str | None = None,
) -> dict:
    row = {
        "id": id,
        "clinic_id": clinic_id,
        "date": on.isoformat(),
        "time": at.strftime("%H:%M:%S"),
        "status": status.value,
    }
    if updated_at is not None:
        row["updated_at"] = updated_at
    return row


def make_appt(**kwargs) -> Appointment:
    return Appointment.model_validate(make_row(**kwargs))


def remote_event(
    kind: str,
    new: dict | None = None,
    old: dict | None = None,
    ts: str | None = None,
    table: str = APPOINTMENTS_TABLE,
) -> ChangeEvent:
    return ChangeEvent.model_validate({
        "eventType": kind,
        "table": table,
        "new": new or {},
        "old": old or {},
        "commit_timestamp": ts,
    })


def ts(minute: int, second: int = 0) -> str:
    """Server timestamp on MONDAY at 08:{minute}:{second} UTC."""
    return datetime(2026, 10, 19, 8, minute, second, tzinfo=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def cache(clock):
    return AvailabilityCache(clock=clock)


@pytest.fixture
def config_store(kv, cache):
    return SchedulingConfigStore(local_store=kv, cache=cache)


@pytest.fixture
def ledger():
    return AppointmentLedger(CLINIC, today=lambda: MONDAY)


@pytest.fixture
def reconciler(remote, cache, ledger, config_store):
    return RealtimeReconciler(
        remote,
        cache,
        CLINIC,
        ledger=ledger,
        config_store=config_store,
        invalidate_delay=0.02,
        notify_delay=0.01,
    )


@pytest.fixture
def availability(remote, cache, config_store, ledger):
    return AvailabilityService(
        remote,
        cache,
        config_store,
        ledger=ledger,
        clock=lambda: datetime(2026, 10, 19, 8, 0),
    )
