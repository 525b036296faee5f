# clinic_booking/routers/deps.py
"""Dependencies resolving the engine components wired in create_app()."""

from fastapi import Request

from ..middleware.abuse_guard import AbuseGuard
from ..services.appointments import AppointmentService
from ..services.slots.availability import AvailabilityService


def get_subject_key(request: Request) -> str:
    """IP-equivalent subject, as set by the fronting proxy."""
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")


def get_availability(request: Request) -> AvailabilityService:
    return request.app.state.availability


def get_guard(request: Request) -> AbuseGuard:
    return request.app.state.guard


def get_appointments(request: Request) -> AppointmentService:
    return request.app.state.appointments
