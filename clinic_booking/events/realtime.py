# clinic_booking/events/realtime.py
"""
Realtime reconciler.

Flow:
1. One Subscription per table consumes the store's change feed
2. Each event is filtered by clinic and applied to the AppointmentLedger
   (settings events go to the SchedulingConfigStore)
3. Cache invalidation for the touched (clinic, date) is debounced (2 s)
4. Listener notification is debounced separately (1 s)

Optimistic writes (apply_local / confirm / revert) go through the same
ledger path, so local and remote changes never diverge in ordering.
"""

import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from ..exceptions import ValidationError
from ..schemas.appointments import Appointment
from ..schemas.events import ChangeEvent, ChangeType, ReconcileNotice
from ..services.cache import AvailabilityCache
from ..services.remote_store import APPOINTMENTS_TABLE, SETTINGS_TABLE, RemoteStore
from ..services.slots.config import SchedulingConfigStore
from ..services.slots.invalidator import invalidate_appointment_dates, invalidate_clinic_settings
from .debounce import KeyedDebouncer
from .ledger import AppointmentLedger, PendingWrite, WriteOp

logger = logging.getLogger(__name__)

INVALIDATE_DELAY = 2.0
NOTIFY_DELAY = 1.0

Listener = Callable[[ReconcileNotice], Any]


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class Subscription:
    """Consumer task for one table's change feed."""

    def __init__(
        self,
        table: str,
        remote: RemoteStore,
        handler: Callable[[ChangeEvent], Any],
    ):
        self.table = table
        self.state = SubscriptionState.DISCONNECTED
        self._remote = remote
        self._handler = handler
        self._stream: Optional[AsyncIterator[ChangeEvent]] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.state is not SubscriptionState.DISCONNECTED:
            return

        self.state = SubscriptionState.CONNECTING
        try:
            self._stream = await self._remote.subscribe(self.table)
        except BaseException:
            self.state = SubscriptionState.DISCONNECTED
            raise

        self.state = SubscriptionState.SUBSCRIBED
        self._task = asyncio.create_task(self._consume(), name=f"realtime:{self.table}")
        logger.info(f"Subscribed to {self.table}")

    async def _consume(self) -> None:
        try:
            async for event in self._stream:
                try:
                    self._handler(event)
                except Exception:
                    logger.exception(f"Failed to handle {self.table} event")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Change feed {self.table} dropped")
        finally:
            self.state = SubscriptionState.DISCONNECTED

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        stream, self._stream = self._stream, None
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

        self.state = SubscriptionState.DISCONNECTED
        logger.info(f"Unsubscribed from {self.table}")


class RealtimeReconciler:
    def __init__(
        self,
        remote: RemoteStore,
        cache: AvailabilityCache,
        clinic_id: str,
        ledger: AppointmentLedger | None = None,
        config_store: SchedulingConfigStore | None = None,
        invalidate_delay: float = INVALIDATE_DELAY,
        notify_delay: float = NOTIFY_DELAY,
    ):
        self.remote = remote
        self.cache = cache
        self.clinic_id = clinic_id
        self.ledger = ledger or AppointmentLedger(clinic_id)
        self.config_store = config_store
        self.subscriptions: dict[str, Subscription] = {}
        self.dropped = 0

        self._invalidator = KeyedDebouncer(invalidate_delay, name="invalidate")
        self._notifier = KeyedDebouncer(notify_delay, name="notify")
        self._listeners: list[Listener] = []

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self, tables: Iterable[str] = (APPOINTMENTS_TABLE, SETTINGS_TABLE)) -> None:
        for table in tables:
            subscription = self.subscriptions.get(table)
            if subscription is None:
                subscription = Subscription(table, self.remote, self.handle)
                self.subscriptions[table] = subscription
            await subscription.start()

    async def stop(self) -> None:
        for subscription in self.subscriptions.values():
            await subscription.stop()
        self._invalidator.cancel_all()
        self._notifier.cancel_all()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def flush(self) -> None:
        """Run pending invalidations and notifications now."""
        self._invalidator.flush()
        self._notifier.flush()

    # ── Remote events ────────────────────────────────────────────────────

    def handle(self, event: ChangeEvent) -> bool:
        """Apply one remote event. Returns True if local state changed."""
        clinic_id = event.clinic_id
        if clinic_id is None and event.event_type is not ChangeType.DELETE:
            logger.warning(f"Dropping {event.event_type.value} on {event.table} without clinic_id")
            self.dropped += 1
            return False
        if clinic_id is not None and clinic_id != self.clinic_id:
            self.dropped += 1
            return False

        if event.table == SETTINGS_TABLE:
            return self._handle_settings(event)
        return self._handle_appointment(event)

    def _handle_appointment(self, event: ChangeEvent) -> bool:
        if not self.ledger.apply(event):
            return False
        self._schedule(APPOINTMENTS_TABLE, event.affected_dates())
        return True

    def _handle_settings(self, event: ChangeEvent) -> bool:
        if self.config_store is not None:
            record = None if event.event_type is ChangeType.DELETE else event.record
            try:
                self.config_store.apply_remote(self.clinic_id, record)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid remote settings for clinic {self.clinic_id}: {e}")
                return False
        self._schedule(SETTINGS_TABLE, [])
        return True

    # ── Optimistic writes ────────────────────────────────────────────────

    def apply_local(
        self,
        op: WriteOp,
        appointment: Appointment,
        previous: Appointment | None = None,
    ) -> PendingWrite:
        pending, event = self.ledger.begin(op, appointment, previous)
        self._schedule(APPOINTMENTS_TABLE, event.affected_dates(), invalidate=False)
        return pending

    def confirm(self, pending: PendingWrite, server_record: Appointment | None) -> bool:
        confirmed = self.ledger.confirm(pending, server_record)
        dates = [pending.draft.date]
        if pending.previous is not None:
            dates.append(pending.previous.date)
        if server_record is not None:
            dates.append(server_record.date)
        self._schedule(APPOINTMENTS_TABLE, dates)
        return confirmed

    def revert(self, pending: PendingWrite) -> ChangeEvent:
        event = self.ledger.revert(pending)
        self._schedule(APPOINTMENTS_TABLE, event.affected_dates(), invalidate=False)
        return event

    # ── Debounced side effects ───────────────────────────────────────────

    def _schedule(self, table: str, dates: Iterable[date], invalidate: bool = True) -> None:
        days: list[Optional[date]] = list(dict.fromkeys(dates)) or [None]
        for day in days:
            key = (table, self.clinic_id, day)
            if invalidate:
                self._invalidator.call(key, self._invalidate, table, day)
            self._notifier.call(key, self._notify, table, day)

    def _invalidate(self, table: str, day: Optional[date], count: int) -> None:
        if table == SETTINGS_TABLE:
            invalidate_clinic_settings(self.cache, self.clinic_id)
        else:
            invalidate_appointment_dates(self.cache, self.clinic_id, [day] if day else None)
            self.ledger.prune()
        logger.debug(f"Invalidated {table} for {self.clinic_id} {day} after {count} events")

    def _notify(self, table: str, day: Optional[date], count: int) -> None:
        notice = ReconcileNotice(table=table, clinic_id=self.clinic_id, day=day, events=count)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception(f"Reconcile listener failed for {table}")
