# clinic_booking/events/ledger.py
"""
In-memory appointment collection for the active clinic.

Every change, remote or local, goes through `apply()`:

    REMOTE  push feed event; ordered by server version, tombstones win
    LOCAL   optimistic write, tagged with a local sequence number
    REVERT  compensation for a failed optimistic write

Rules:
✓ per entity, events apply in arrival order
✓ a version not newer than the last applied one is discarded
✓ DELETE always wins; a tombstoned id is never resurrected
✓ while a local write is pending, remote INSERT/UPDATE for that entity
  are held back and replayed after confirm / revert
✓ confirm installs the server-acknowledged version, so the feed's echo
  of our own write (same or older version) is ignored
✓ `prune()` forgets past days and expires tombstones after `tombstone_ttl`
"""

import itertools
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from time import monotonic
from typing import Callable, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from ..schemas.appointments import Appointment
from ..schemas.events import ChangeEvent, ChangeType, EventOrigin, parse_timestamp

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local:"

# Longer than any realistic feed delivery lag
TOMBSTONE_TTL = 60 * 60.0


class WriteOp(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingWrite:
    seq: int
    op: WriteOp
    entity_id: str
    draft: Appointment
    previous: Optional[Appointment] = None


class AppointmentLedger:
    def __init__(
        self,
        clinic_id: str,
        tombstone_ttl: float = TOMBSTONE_TTL,
        clock: Callable[[], float] = monotonic,
        today: Callable[[], date] = date.today,
    ):
        self.clinic_id = clinic_id
        self.tombstone_ttl = tombstone_ttl
        self._clock = clock
        self._today = today
        self.records: dict[str, Appointment] = {}
        self._confirmed: dict[str, Appointment] = {}
        self._versions: dict[str, datetime] = {}
        self._tombstones: dict[str, Optional[datetime]] = {}
        self._tombstoned_at: dict[str, float] = {}
        self._pending: dict[int, PendingWrite] = {}
        self._pending_ids: dict[str, int] = {}
        self._deferred: dict[str, ChangeEvent] = {}
        self._seq = itertools.count(1)
        self.last_seq = 0

    # ── Apply ────────────────────────────────────────────────────────────

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one event. Returns True if the visible collection changed."""
        entity_id = event.entity_id
        if entity_id is None:
            logger.warning(f"Dropping {event.event_type.value} event without id on {event.table}")
            return False

        if entity_id in self._tombstones:
            logger.debug(f"Ignoring {event.event_type.value} for deleted appointment {entity_id}")
            return False

        if event.origin is EventOrigin.REMOTE:
            return self._apply_remote(entity_id, event)
        return self._mutate(entity_id, event)

    def _apply_remote(self, entity_id: str, event: ChangeEvent) -> bool:
        version = event.version

        if event.event_type is ChangeType.DELETE:
            changed = self._mutate(entity_id, event)
            self._tombstone(entity_id, version)
            self._deferred.pop(entity_id, None)
            self._confirmed.pop(entity_id, None)
            if version is not None:
                self._versions[entity_id] = version
            return changed

        applied = self._versions.get(entity_id)
        if version is not None and applied is not None and version <= applied:
            logger.debug(f"Ignoring stale {event.event_type.value} for {entity_id}")
            return False

        if entity_id in self._pending_ids:
            held = self._deferred.get(entity_id)
            if held is None or _is_newer(version, held.version):
                self._deferred[entity_id] = event
            return False

        changed = self._mutate(entity_id, event)
        if changed:
            self._confirmed[entity_id] = self.records[entity_id]
        if version is not None:
            self._versions[entity_id] = version
        return changed

    def _mutate(self, entity_id: str, event: ChangeEvent) -> bool:
        if event.event_type is ChangeType.DELETE:
            return self.records.pop(entity_id, None) is not None

        try:
            appointment = Appointment.model_validate(event.record or {})
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed appointment row {entity_id}: {e}")
            return False

        if appointment.clinic_id != self.clinic_id:
            return False
        self.records[entity_id] = appointment
        return True

    # ── Optimistic writes ────────────────────────────────────────────────

    def begin(
        self,
        op: WriteOp,
        appointment: Appointment,
        previous: Optional[Appointment] = None,
    ) -> tuple[PendingWrite, ChangeEvent]:
        """Apply a local write immediately and track it until confirm / revert."""
        seq = next(self._seq)
        self.last_seq = seq

        if op is WriteOp.CREATE:
            entity_id = f"{LOCAL_ID_PREFIX}{seq}"
            draft = appointment.model_copy(update={"id": entity_id})
            event = _event(ChangeType.INSERT, record=draft, seq=seq)
        elif op is WriteOp.UPDATE:
            entity_id = appointment.id
            draft = appointment
            previous = previous or self.records.get(entity_id)
            event = _event(ChangeType.UPDATE, record=draft, old=previous, seq=seq)
        else:
            entity_id = appointment.id
            draft = appointment
            previous = previous or self.records.get(entity_id) or appointment
            event = _event(ChangeType.DELETE, old=previous, seq=seq)

        pending = PendingWrite(seq=seq, op=op, entity_id=entity_id, draft=draft, previous=previous)
        self._pending[seq] = pending
        self._pending_ids[entity_id] = seq
        self.apply(event)
        return pending, event

    def confirm(self, pending: PendingWrite, server_record: Optional[Appointment]) -> bool:
        """
        Install the store's acknowledgment of a pending write.

        Returns:
            False when a newer server state superseded the write
        """
        self._release(pending)

        if pending.op is WriteOp.CREATE:
            self.records.pop(pending.entity_id, None)
            if server_record is None:
                return False
            entity_id = server_record.id
        else:
            entity_id = pending.entity_id

        deferred = self._deferred.pop(entity_id, None)

        if entity_id in self._tombstones:
            logger.warning(f"Write #{pending.seq} to {entity_id} superseded by a delete")
            return False

        if pending.op is WriteOp.DELETE:
            self.records.pop(entity_id, None)
            self._confirmed.pop(entity_id, None)
            self._tombstone(entity_id, self._versions.get(entity_id))
            return True

        ack_version = parse_timestamp(server_record.updated_at) if server_record else None
        applied = self._versions.get(entity_id)
        if ack_version is not None and applied is not None and ack_version < applied:
            logger.warning(f"Write #{pending.seq} to {entity_id} superseded by a newer version")
            if entity_id in self._confirmed:
                self.records[entity_id] = self._confirmed[entity_id]
            if deferred is not None:
                self._apply_remote(entity_id, deferred)
            return False

        if server_record is not None:
            self.records[entity_id] = server_record
            self._confirmed[entity_id] = server_record
        if ack_version is not None:
            self._versions[entity_id] = ack_version

        if deferred is not None and server_record is not None and _same_row(deferred, server_record):
            # Echo of this write
            if _is_newer(deferred.version, ack_version):
                self._versions[entity_id] = deferred.version
            return True

        if deferred is not None and self._apply_remote(entity_id, deferred):
            logger.warning(f"Write #{pending.seq} to {entity_id} superseded by a newer version")
            return False
        return True

    def revert(self, pending: PendingWrite) -> ChangeEvent:
        """Undo a failed write through the normal apply path."""
        self._release(pending)

        if pending.op is WriteOp.CREATE:
            event = _event(ChangeType.DELETE, old=pending.draft, seq=pending.seq, origin=EventOrigin.REVERT)
        elif pending.op is WriteOp.UPDATE and pending.previous is not None:
            event = _event(
                ChangeType.UPDATE,
                record=pending.previous,
                old=pending.draft,
                seq=pending.seq,
                origin=EventOrigin.REVERT,
            )
        elif pending.op is WriteOp.UPDATE:
            event = _event(ChangeType.DELETE, old=pending.draft, seq=pending.seq, origin=EventOrigin.REVERT)
        else:
            event = _event(ChangeType.INSERT, record=pending.previous, seq=pending.seq, origin=EventOrigin.REVERT)

        self.apply(event)

        deferred = self._deferred.pop(pending.entity_id, None)
        if deferred is not None:
            self._apply_remote(pending.entity_id, deferred)
        return event

    def _release(self, pending: PendingWrite) -> None:
        self._pending.pop(pending.seq, None)
        if self._pending_ids.get(pending.entity_id) == pending.seq:
            del self._pending_ids[pending.entity_id]

    def _tombstone(self, entity_id: str, version: Optional[datetime]) -> None:
        self._tombstones[entity_id] = version
        self._tombstoned_at[entity_id] = self._clock()

    # ── Housekeeping ─────────────────────────────────────────────────────

    def prune(self) -> int:
        """
        Drop state nobody will ask about again: appointments on days before
        today (unless a write to them is pending) and tombstones older than
        `tombstone_ttl`.

        Returns:
            Number of entries removed
        """
        today = self._today()
        removed = 0

        for entity_id, appt in list(self.records.items()):
            if appt.date < today and entity_id not in self._pending_ids:
                del self.records[entity_id]
                self._confirmed.pop(entity_id, None)
                self._versions.pop(entity_id, None)
                self._deferred.pop(entity_id, None)
                removed += 1

        # Versions kept for ids that were never visible (other clinics, malformed rows)
        for entity_id in list(self._versions):
            if entity_id not in self.records and entity_id not in self._tombstones \
                    and entity_id not in self._pending_ids:
                del self._versions[entity_id]

        cutoff = self._clock() - self.tombstone_ttl
        for entity_id, deleted_at in list(self._tombstoned_at.items()):
            if deleted_at <= cutoff:
                del self._tombstoned_at[entity_id]
                self._tombstones.pop(entity_id, None)
                self._versions.pop(entity_id, None)
                removed += 1

        if removed:
            logger.debug(f"Pruned {removed} ledger entries for clinic {self.clinic_id}")
        return removed

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def pending_writes(self) -> list[PendingWrite]:
        return list(self._pending.values())

    def is_deleted(self, entity_id: str) -> bool:
        return entity_id in self._tombstones

    def overlay(self, target_date: date, base: Iterable[Appointment]) -> list[Appointment]:
        """
        Merge a loaded appointment list with what the ledger knows.

        Ledger records replace base rows unless the base row is newer;
        deleted and pending-delete ids disappear.
        """
        hidden = {p.entity_id for p in self._pending.values() if p.op is WriteOp.DELETE}
        hidden.update(self._tombstones)

        merged: dict[str, Appointment] = {}
        for appt in base:
            if appt.id not in hidden:
                merged[appt.id] = appt

        for entity_id, appt in self.records.items():
            if entity_id in hidden:
                continue
            current = merged.get(entity_id)
            if current is not None and _is_newer(
                parse_timestamp(current.updated_at), parse_timestamp(appt.updated_at)
            ):
                continue
            merged[entity_id] = appt

        day = [a for a in merged.values() if a.date == target_date]
        return sorted(day, key=lambda a: (a.time, a.id))

    def is_occupied(
        self,
        target_date: date,
        slot_time: time,
        base: Iterable[Appointment] = (),
    ) -> bool:
        return any(
            a.occupies_slot and a.time.replace(second=0, microsecond=0, tzinfo=None) == slot_time
            for a in self.overlay(target_date, base)
        )


def _event(
    event_type: ChangeType,
    record: Optional[Appointment] = None,
    old: Optional[Appointment] = None,
    seq: Optional[int] = None,
    origin: EventOrigin = EventOrigin.LOCAL,
) -> ChangeEvent:
    return ChangeEvent(
        event_type=event_type,
        table="appointments",
        record=record.model_dump(mode="json") if record is not None else None,
        old_record=old.model_dump(mode="json") if old is not None else None,
        origin=origin,
        local_seq=seq,
    )


_ROW_STAMPS = {"created_at", "updated_at"}


def _same_row(event: ChangeEvent, appointment: Appointment) -> bool:
    """True when the event carries the same appointment state, stamps aside."""
    try:
        other = Appointment.model_validate(event.record or {})
    except PydanticValidationError:
        return False
    return other.model_dump(exclude=_ROW_STAMPS) == appointment.model_dump(exclude=_ROW_STAMPS)


def _is_newer(candidate: Optional[datetime], reference: Optional[datetime]) -> bool:
    if candidate is None:
        return False
    if reference is None:
        return True
    return candidate > reference
