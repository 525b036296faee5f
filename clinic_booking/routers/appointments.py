# clinic_booking/routers/appointments.py

from fastapi import APIRouter, Depends, HTTPException

from ..exceptions import (
    ChallengeRequired,
    RemoteStoreError,
    SlotConflictError,
    SlotUnavailableError,
    TransientStoreError,
)
from ..schemas.appointments import Appointment, AppointmentCreate
from ..services.appointments import AppointmentService
from .deps import get_appointments, get_subject_key, get_user_agent

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.post("", response_model=Appointment, status_code=201)
async def create_appointment(
    data: AppointmentCreate,
    subject_key: str = Depends(get_subject_key),
    user_agent: str = Depends(get_user_agent),
    service: AppointmentService = Depends(get_appointments),
):
    if data.clinic_id != service.clinic_id:
        raise HTTPException(404, "Clinic not found")

    try:
        return await service.create(data, subject_key, user_agent)
    except ChallengeRequired as e:
        raise HTTPException(429, e.status.reason)
    except (SlotConflictError, SlotUnavailableError) as e:
        raise HTTPException(409, str(e))
    except TransientStoreError:
        raise HTTPException(503, "Appointment store unavailable")
    except RemoteStoreError as e:
        raise HTTPException(502, str(e))
