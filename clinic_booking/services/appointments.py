# clinic_booking/services/appointments.py
"""
Appointment write path.

Steps for every write:
1. AbuseGuard gate (bookings only) → ChallengeRequired
2. Local pre-check against the overlaid day → SlotUnavailableError
3. Optimistic apply through the reconciler (visible immediately)
4. Remote write (never retried)
5. Confirm with the server record, or revert on failure
"""

import asyncio
import logging
from datetime import date, time
from typing import Any

from ..events.ledger import WriteOp
from ..events.realtime import RealtimeReconciler
from ..exceptions import ChallengeRequired, StaleWriteRejected
from ..middleware.abuse_guard import AbuseGuard
from ..schemas.appointments import Appointment, AppointmentCreate, AppointmentStatus
from ..utils.hashing import contact_fingerprint
from .remote_store import APPOINTMENTS_TABLE, RemoteStore
from .slots.availability import AvailabilityService

logger = logging.getLogger(__name__)


class AppointmentService:
    def __init__(
        self,
        remote: RemoteStore,
        reconciler: RealtimeReconciler,
        availability: AvailabilityService | None = None,
        guard: AbuseGuard | None = None,
    ):
        self.remote = remote
        self.reconciler = reconciler
        self.availability = availability
        self.guard = guard

    @property
    def clinic_id(self) -> str:
        return self.reconciler.clinic_id

    # ── Create ───────────────────────────────────────────────────────────

    async def create(
        self,
        data: AppointmentCreate,
        subject_key: str | None = None,
        user_agent: str | None = None,
    ) -> Appointment:
        """
        Book a slot.

        Raises:
            ChallengeRequired: the guard demands a challenge first
            SlotUnavailableError: the slot is known locally to be taken
            SlotConflictError: the store rejected the booking
            TransientStoreError: the store is unreachable
        """
        if self.guard is not None:
            self._check_guard(data, subject_key, user_agent)

        if self.availability is not None:
            await self.availability.ensure_bookable(data.clinic_id, data.date, data.time)

        draft = Appointment(
            id="",
            clinic_id=data.clinic_id,
            date=data.date,
            time=data.time,
            status=data.status,
            name=data.name,
            email=data.email,
            phone=data.phone,
            contact_fingerprint=contact_fingerprint(data.phone, data.email),
        )
        payload = draft.model_dump(mode="json", exclude={"id", "created_at", "updated_at"}, exclude_none=True)

        pending = self.reconciler.apply_local(WriteOp.CREATE, draft)
        try:
            row = await self.remote.create(APPOINTMENTS_TABLE, payload)
        except (Exception, asyncio.CancelledError):
            self.reconciler.revert(pending)
            raise

        created = Appointment.model_validate(row)
        self.reconciler.confirm(pending, created)
        logger.info(f"Appointment {created.id} booked for {created.date} {created.time}")
        return created

    def _check_guard(self, data: AppointmentCreate, subject_key: str | None, user_agent: str | None) -> None:
        status = self.guard.check_status(subject_key, data.email, data.phone)
        if status.requires_challenge:
            raise ChallengeRequired(status)

        status = self.guard.record_booking_attempt(subject_key, data.email, data.phone, user_agent)
        if status.requires_challenge:
            raise ChallengeRequired(status)

    # ── Update ───────────────────────────────────────────────────────────

    async def update(self, previous: Appointment, **changes: Any) -> Appointment:
        """
        Patch an appointment.

        Raises:
            StaleWriteRejected: a newer server state superseded this write
                and it was the latest local action
        """
        draft = Appointment.model_validate({**previous.model_dump(), **changes})
        patch = draft.model_dump(mode="json", include=set(changes))

        pending = self.reconciler.apply_local(WriteOp.UPDATE, draft, previous)
        try:
            row = await self.remote.update(APPOINTMENTS_TABLE, previous.id, patch)
        except (Exception, asyncio.CancelledError):
            self.reconciler.revert(pending)
            raise

        updated = Appointment.model_validate(row)
        if not self.reconciler.confirm(pending, updated):
            if pending.seq == self.reconciler.ledger.last_seq:
                raise StaleWriteRejected(previous.id)
            logger.warning(f"Superseded write #{pending.seq} to {previous.id} abandoned")
        return updated

    async def cancel(self, appointment: Appointment) -> Appointment:
        return await self.update(appointment, status=AppointmentStatus.CANCELLED)

    async def reschedule(self, appointment: Appointment, new_date: date, new_time: time) -> Appointment:
        """Move to another slot, keeping the original date/time for history."""
        if self.availability is not None:
            await self.availability.ensure_bookable(appointment.clinic_id, new_date, new_time)
        return await self.update(
            appointment,
            date=new_date,
            time=new_time,
            status=AppointmentStatus.RESCHEDULED,
            original_date=appointment.original_date or appointment.date,
            original_time=appointment.original_time or appointment.time,
        )

    # ── Delete ───────────────────────────────────────────────────────────

    async def delete(self, appointment: Appointment) -> None:
        pending = self.reconciler.apply_local(WriteOp.DELETE, appointment, appointment)
        try:
            await self.remote.delete(APPOINTMENTS_TABLE, appointment.id)
        except (Exception, asyncio.CancelledError):
            self.reconciler.revert(pending)
            raise

        self.reconciler.confirm(pending, None)
        logger.info(f"Appointment {appointment.id} deleted")
