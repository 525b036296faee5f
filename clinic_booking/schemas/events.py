# clinic_booking/schemas/events.py
"""
Change events pushed by the remote store's realtime feed.

Payload shape (as sent by the store):
    {"eventType": "INSERT", "table": "appointments",
     "new": {...}, "old": {...}, "commit_timestamp": "2026-10-17T10:00:00Z"}
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EventOrigin(str, Enum):
    REMOTE = "remote"   # push feed (other clients, or echo of our own write)
    LOCAL = "local"     # optimistic local write, not yet confirmed
    REVERT = "revert"   # compensation for a failed optimistic write


class ChangeEvent(BaseModel):
    event_type: ChangeType = Field(alias="eventType")
    table: str = ""
    record: Optional[dict[str, Any]] = Field(default=None, alias="new")
    old_record: Optional[dict[str, Any]] = Field(default=None, alias="old")
    commit_timestamp: Optional[datetime] = None
    origin: EventOrigin = EventOrigin.REMOTE
    local_seq: Optional[int] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("event_type", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def _empty_to_none(cls, value):
        # The feed sends {} for the missing side of INSERT / DELETE
        return value or None

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (new side, else old side)."""
        return self.record or self.old_record or {}

    @property
    def entity_id(self) -> Optional[str]:
        value = self.row.get("id")
        if value is None and self.old_record:
            value = self.old_record.get("id")
        return str(value) if value is not None else None

    @property
    def clinic_id(self) -> Optional[str]:
        for side in (self.record, self.old_record):
            if side and side.get("clinic_id") is not None:
                return str(side["clinic_id"])
        return None

    @property
    def version(self) -> Optional[datetime]:
        """
        Server ordering stamp: the row's updated_at, else the commit timestamp.

        updated_at comes first so feed events compare on the same clock as
        write acknowledgments, which only carry the row.
        """
        stamp = parse_timestamp(self.row.get("updated_at"))
        if stamp is not None:
            return stamp
        if self.commit_timestamp is not None:
            return as_utc(self.commit_timestamp)
        return None

    def affected_dates(self) -> list[date]:
        """Dates whose appointment lists this event touches (both sides of a reschedule)."""
        dates: list[date] = []
        for side in (self.record, self.old_record):
            if not side or not side.get("date"):
                continue
            value = side["date"]
            if isinstance(value, str):
                value = date.fromisoformat(value[:10])
            if value not in dates:
                dates.append(value)
        return dates


class ReconcileNotice(BaseModel):
    """Debounced notification handed to listeners after a burst of changes."""
    table: str
    clinic_id: str
    day: Optional[date] = None
    events: int = 1


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
