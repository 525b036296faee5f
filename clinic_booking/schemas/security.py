# clinic_booking/schemas/security.py

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AttemptKind(str, Enum):
    SUBJECT = "subject"          # IP-equivalent
    EMAIL = "email"
    PHONE = "phone"
    FAILED_LOGIN = "failed_login"


class ChallengePhase(str, Enum):
    CLEAR = "clear"
    REQUIRED = "required"
    COOLDOWN = "cooldown"


class SecurityStatus(BaseModel):
    requires_challenge: bool
    reason: str = ""
    phase: ChallengePhase = ChallengePhase.CLEAR
    cooldown_remaining: Optional[float] = Field(default=None, description="Seconds")
    attempts_remaining: Optional[int] = None
    blacklisted: bool = False


class Challenge(BaseModel):
    question: str
    answer: str


class ChallengeQuestion(BaseModel):
    """Challenge as shown to the client (no answer)."""
    question: str


class ChallengeAnswer(BaseModel):
    answer: str


class ChallengeResult(BaseModel):
    success: bool
    status: SecurityStatus
    question: Optional[str] = None
