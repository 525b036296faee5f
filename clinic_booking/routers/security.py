# clinic_booking/routers/security.py
"""
Challenge gate endpoints.

GET  /security/status            - Current gate for the caller
POST /security/challenge         - Question to answer
POST /security/challenge/verify  - Submit an answer
"""

from fastapi import APIRouter, Depends

from ..middleware.abuse_guard import AbuseGuard
from ..schemas.security import ChallengeAnswer, ChallengeQuestion, ChallengeResult, SecurityStatus
from .deps import get_guard, get_subject_key

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/status", response_model=SecurityStatus)
def get_status(
    email: str | None = None,
    phone: str | None = None,
    subject_key: str = Depends(get_subject_key),
    guard: AbuseGuard = Depends(get_guard),
):
    return guard.check_status(subject_key, email, phone)


@router.post("/challenge", response_model=ChallengeQuestion)
def get_challenge(
    subject_key: str = Depends(get_subject_key),
    guard: AbuseGuard = Depends(get_guard),
):
    challenge = guard.issue_challenge(subject_key)
    return ChallengeQuestion(question=challenge.question)


@router.post("/challenge/verify", response_model=ChallengeResult)
def verify_challenge(
    data: ChallengeAnswer,
    email: str | None = None,
    phone: str | None = None,
    subject_key: str = Depends(get_subject_key),
    guard: AbuseGuard = Depends(get_guard),
):
    return guard.verify_challenge(subject_key, data.answer, email, phone)
