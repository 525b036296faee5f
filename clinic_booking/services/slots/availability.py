# clinic_booking/services/slots/availability.py
"""
Day availability for a clinic.

Takes into account:
- Scheduling config (cache `settings:{clinic}`, remote value, local bootstrap)
- Closed days (kill-switch, holidays, disabled day schedule)
- The day's appointments (cache `appointments:{clinic}:{date}`)
- Realtime-applied and pending optimistic records from the ledger
"""

import logging
from datetime import date, datetime, time
from typing import Any, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from ...events.ledger import AppointmentLedger
from ...exceptions import SlotUnavailableError, TransientStoreError
from ...schemas.appointments import Appointment
from ...schemas.scheduling import SchedulingConfig
from ...schemas.slots import ClosedReason, DaySlots, SlotState, TimeSlot
from ..cache import AvailabilityCache, appointments_key, settings_key
from ..remote_store import APPOINTMENTS_TABLE, SETTINGS_TABLE, RemoteStore
from .calculator import calculate_day_slots, closed_reason
from .config import SchedulingConfigStore, minutes_to_time_str, time_str_to_minutes
from .invalidator import get_affected_dates

logger = logging.getLogger(__name__)


class AvailabilityService:
    def __init__(
        self,
        remote: RemoteStore,
        cache: AvailabilityCache,
        config_store: SchedulingConfigStore,
        ledger: AppointmentLedger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.remote = remote
        self.cache = cache
        self.config_store = config_store
        self.ledger = ledger
        self.clock = clock

    # ── Config ───────────────────────────────────────────────────────────

    async def get_config(self, clinic_id: str, refresh: bool = False) -> SchedulingConfig:
        """
        Clinic config through the cache.

        When the store is unreachable the last known value (or the local
        bootstrap / defaults) is returned and nothing is cached.
        """
        try:
            return await self.cache.get_or_load(
                settings_key(clinic_id),
                lambda: self._load_config(clinic_id),
                refresh=refresh,
            )
        except TransientStoreError as e:
            logger.warning(f"Using bootstrap config for clinic {clinic_id}: {e}")
            return self.config_store.get(clinic_id)

    async def _load_config(self, clinic_id: str) -> SchedulingConfig:
        rows = await self.remote.list(SETTINGS_TABLE, clinic_id=clinic_id)
        if not rows:
            return self.config_store.get(clinic_id)
        return self.config_store.apply_remote(clinic_id, rows[0])

    async def update_config(self, clinic_id: str, partial: Mapping[str, Any]) -> SchedulingConfig:
        """
        Validate and apply locally, then write the merged config to the store.

        Raises:
            ValidationError: nothing is written
            RemoteStoreError: the local value stays until the next remote load
        """
        config = self.config_store.set(clinic_id, partial)
        payload = config.model_dump(mode="json", exclude={"updated_at"})

        rows = await self.remote.list(SETTINGS_TABLE, clinic_id=clinic_id)
        if rows:
            row = await self.remote.update(SETTINGS_TABLE, str(rows[0]["id"]), payload)
        else:
            row = await self.remote.create(SETTINGS_TABLE, payload)

        config = self.config_store.apply_remote(clinic_id, row)
        self.cache.set(settings_key(clinic_id), config)
        return config

    # ── Appointments ─────────────────────────────────────────────────────

    async def get_appointments(
        self,
        clinic_id: str,
        target_date: date,
        refresh: bool = False,
    ) -> list[Appointment]:
        """Appointments of the day, with the ledger overlaid for the active clinic."""
        base = await self.cache.get_or_load(
            appointments_key(clinic_id, target_date),
            lambda: self._load_appointments(clinic_id, target_date),
            refresh=refresh,
        )
        if self.ledger is not None and self.ledger.clinic_id == clinic_id:
            return self.ledger.overlay(target_date, base)
        return list(base)

    async def _load_appointments(self, clinic_id: str, target_date: date) -> list[Appointment]:
        rows = await self.remote.list(APPOINTMENTS_TABLE, clinic_id=clinic_id, date=target_date)
        appointments = []
        for row in rows:
            try:
                appointments.append(Appointment.model_validate(row))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed appointment row {row.get('id')}: {e}")
        return appointments

    # ── Slots ────────────────────────────────────────────────────────────

    async def get_day_slots(
        self,
        clinic_id: str,
        target_date: date,
        now: datetime | None = None,
    ) -> DaySlots:
        """
        Slots for one day.

        Raises:
            TransientStoreError: appointments could not be loaded
        """
        now = now or self.clock()

        # Closed days need no appointments
        try:
            config = await self.get_config(clinic_id)
            reason = closed_reason(target_date, config, now)
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid scheduling config for clinic {clinic_id}: {e}")
            return DaySlots(date=target_date, closed_reason=ClosedReason.INVALID_CONFIG)
        if reason is not None:
            return DaySlots(date=target_date, closed_reason=reason)

        appointments = await self.get_appointments(clinic_id, target_date)

        try:
            return calculate_day_slots(target_date, config, appointments, now=now)
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid scheduling config for clinic {clinic_id}: {e}")
            return DaySlots(date=target_date, closed_reason=ClosedReason.INVALID_CONFIG)

    async def get_calendar(
        self,
        clinic_id: str,
        date_start: date,
        date_end: date,
        now: datetime | None = None,
    ) -> list[DaySlots]:
        now = now or self.clock()
        return [
            await self.get_day_slots(clinic_id, dt, now=now)
            for dt in get_affected_dates(date_start, date_end)
        ]

    async def ensure_bookable(
        self,
        clinic_id: str,
        target_date: date,
        slot_time: time | str,
        now: datetime | None = None,
    ) -> TimeSlot:
        """
        Local pre-check before a booking goes to the store.

        Raises:
            SlotUnavailableError: the slot does not exist or is not open
        """
        label = minutes_to_time_str(time_str_to_minutes(slot_time))
        day = await self.get_day_slots(clinic_id, target_date, now=now)

        for slot in day.slots:
            if slot.label != label:
                continue
            if slot.state is not SlotState.OPEN:
                raise SlotUnavailableError(f"Slot {target_date} {label} is {slot.state.value}")
            return slot

        reason = day.closed_reason.value if day.closed_reason else "not a slot"
        raise SlotUnavailableError(f"Slot {target_date} {label} unavailable: {reason}")
