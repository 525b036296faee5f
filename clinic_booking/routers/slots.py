# clinic_booking/routers/slots.py
"""
Slots API endpoints.

GET /slots/day      - Slots of one day for a clinic
GET /slots/calendar - Per-day slots for a date range
"""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query

from ..exceptions import TransientStoreError
from ..schemas.slots import DaySlots, DaySlotsResponse, TimeSlotRead
from ..services.slots.availability import AvailabilityService
from .deps import get_availability

MAX_CALENDAR_DAYS = 62

router = APIRouter(prefix="/slots", tags=["slots"])


def _to_response(clinic_id: str, day: DaySlots) -> DaySlotsResponse:
    return DaySlotsResponse(
        clinic_id=clinic_id,
        date=day.date,
        closed_reason=day.closed_reason,
        slots=[
            TimeSlotRead(
                time=slot.label,
                end=slot.end.strftime("%H:%M"),
                bookable=slot.bookable,
                state=slot.state,
            )
            for slot in day.slots
        ],
    )


@router.get("/day", response_model=DaySlotsResponse)
async def get_slots_day(
    clinic_id: str,
    target_date: date = Query(alias="date"),
    availability: AvailabilityService = Depends(get_availability),
):
    """Slots of one day; closed days come back empty with `closed_reason`."""
    try:
        day = await availability.get_day_slots(clinic_id, target_date)
    except TransientStoreError:
        raise HTTPException(503, "Appointment store unavailable")
    return _to_response(clinic_id, day)


@router.get("/calendar", response_model=list[DaySlotsResponse])
async def get_slots_calendar(
    clinic_id: str,
    start_date: date,
    end_date: date,
    availability: AvailabilityService = Depends(get_availability),
):
    if abs((end_date - start_date).days) >= MAX_CALENDAR_DAYS:
        raise HTTPException(400, f"Range is limited to {MAX_CALENDAR_DAYS} days")
    try:
        days = await availability.get_calendar(clinic_id, start_date, end_date)
    except TransientStoreError:
        raise HTTPException(503, "Appointment store unavailable")
    return [_to_response(clinic_id, day) for day in days]
