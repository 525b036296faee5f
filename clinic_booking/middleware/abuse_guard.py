# clinic_booking/middleware/abuse_guard.py
"""
Abuse guard for the booking and login paths.

Counters (sliding window, 24 h):
- Per subject (IP-equivalent) booking attempts
- Per email booking attempts
- Per phone booking attempts
- Per subject failed logins

Escalation:
    clear → required(reason) → cooldown(expires_at) → clear
    3 suspicious trips within the window → blacklist (24 h)

Storage is a KeyValueStore. When it is down the guard fails open:
counts read as zero, nobody is blacklisted, state is clear.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..config import Settings
from ..exceptions import StorageUnavailableError
from ..schemas.security import (
    AttemptKind,
    Challenge,
    ChallengePhase,
    ChallengeResult,
    SecurityStatus,
)
from ..services.kv_store import KeyValueStore
from ..utils.challenge import generate_challenge, verify_answer
from ..utils.hashing import hash_ua, hash_value, normalize_email, normalize_phone

logger = logging.getLogger(__name__)


# ============================================================
# GUARD CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class GuardConfig:
    max_failed_logins: int = 5
    max_appointments_per_ip: int = 10
    max_appointments_per_email: int = 5
    max_appointments_per_phone: int = 3

    tracking_window: int = 24 * 60 * 60
    captcha_cooldown: int = 30 * 60
    blacklist_duration: int = 24 * 60 * 60

    suspicious_threshold: int = 3
    max_challenge_failures: int = 3

    def limit_for(self, kind: AttemptKind) -> int:
        return {
            AttemptKind.SUBJECT: self.max_appointments_per_ip,
            AttemptKind.EMAIL: self.max_appointments_per_email,
            AttemptKind.PHONE: self.max_appointments_per_phone,
            AttemptKind.FAILED_LOGIN: self.max_failed_logins,
        }[kind]

    @classmethod
    def from_settings(cls, settings: Settings) -> "GuardConfig":
        return cls(
            max_failed_logins=settings.max_failed_logins,
            max_appointments_per_ip=settings.max_appointments_per_ip,
            max_appointments_per_email=settings.max_appointments_per_email,
            max_appointments_per_phone=settings.max_appointments_per_phone,
            tracking_window=settings.tracking_window_seconds,
            captcha_cooldown=settings.captcha_cooldown_seconds,
            blacklist_duration=settings.blacklist_seconds,
        )


BLACKLIST_REASON = "Access temporarily blocked due to suspicious activity"

_REASONS = {
    AttemptKind.SUBJECT: "Too many booking attempts from this device ({count}). Please complete the challenge.",
    AttemptKind.EMAIL: "Too many booking attempts with this email ({count}). Please complete the challenge.",
    AttemptKind.PHONE: "Too many booking attempts with this phone number ({count}). Please complete the challenge.",
    AttemptKind.FAILED_LOGIN: "Too many failed login attempts ({count}). Please complete the challenge.",
}


def _normalize(kind: AttemptKind, value: Optional[str]) -> str:
    if kind is AttemptKind.EMAIL:
        return normalize_email(value)
    if kind is AttemptKind.PHONE:
        return normalize_phone(value)
    return (value or "").strip()


# ============================================================
# GUARD
# ============================================================

class AbuseGuard:
    """
    Identity of a caller is (subject_key, email, phone); email and phone
    are optional and only known on the booking path.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: GuardConfig | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.config = config or GuardConfig()
        self._clock = clock
        self._rng = rng

    # ---- keys ----

    @staticmethod
    def _attempts_key(kind: AttemptKind, subject: str) -> str:
        return f"guard:attempts:{kind.value}:{hash_value(subject)}"

    @staticmethod
    def _suspicious_key(subject: str) -> str:
        return f"guard:suspicious:{hash_value(subject)}"

    @staticmethod
    def _blacklist_key(subject: str) -> str:
        return f"guard:blacklist:{hash_value(subject)}"

    @staticmethod
    def _state_key(subject: str) -> str:
        return f"guard:state:{hash_value(subject)}"

    @staticmethod
    def _challenge_key(subject: str) -> str:
        return f"guard:challenge:{hash_value(subject)}"

    # ---- storage (fail open) ----

    def _load(self, key: str, default: Any = None) -> Any:
        try:
            value = self.store.get(key)
        except StorageUnavailableError as e:
            logger.warning(f"Guard storage read failed, failing open: {e}")
            return default
        return default if value is None else value

    def _save(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            self.store.set(key, value, ttl=ttl)
        except StorageUnavailableError as e:
            logger.warning(f"Guard storage write failed: {e}")

    def _delete(self, *keys: str) -> None:
        try:
            self.store.delete(*keys)
        except StorageUnavailableError as e:
            logger.warning(f"Guard storage delete failed: {e}")

    def _append(self, key: str, record: dict) -> int:
        """Add a record to a tracking window; returns the window's size."""
        try:
            return self.store.add_to_window(key, record, self._clock(), self.config.tracking_window)
        except StorageUnavailableError as e:
            logger.warning(f"Guard storage write failed, failing open: {e}")
            return 0

    def _count(self, key: str) -> int:
        try:
            return self.store.count_window(key, self._clock() - self.config.tracking_window)
        except StorageUnavailableError as e:
            logger.warning(f"Guard storage read failed, failing open: {e}")
            return 0

    def _identities(
        self,
        subject_key: Optional[str],
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> list[str]:
        identities = [
            _normalize(AttemptKind.SUBJECT, subject_key),
            _normalize(AttemptKind.EMAIL, email),
            _normalize(AttemptKind.PHONE, phone),
        ]
        return list(dict.fromkeys(i for i in identities if i))

    # ============================================================
    # ATTEMPTS
    # ============================================================

    def record_attempt(
        self,
        kind: AttemptKind | str,
        subject_key: str,
        user_agent: str | None = None,
    ) -> SecurityStatus:
        """Record one attempt; trips the subject into `required` past the limit."""
        kind = AttemptKind(kind)
        subject = _normalize(kind, subject_key)
        if not subject:
            return SecurityStatus(requires_challenge=False)

        now = self._clock()
        count = self._append(
            self._attempts_key(kind, subject),
            {"subject_key": hash_value(subject), "user_agent_hash": hash_ua(user_agent)},
        )
        if self._tripped(kind, count):
            reason = _REASONS[kind].format(count=count)
            logger.warning(f"Guard tripped: {kind.value} count={count}")
            self._save(
                self._state_key(subject),
                {
                    "phase": ChallengePhase.REQUIRED.value,
                    "reason": reason,
                    "category": kind.value,
                    "tripped_at": now,
                },
                ttl=self.config.tracking_window,
            )
            self._record_suspicious(subject, kind, count, user_agent)

        return self._status_for(subject)

    def _tripped(self, kind: AttemptKind, count: int) -> bool:
        limit = self.config.limit_for(kind)
        if kind is AttemptKind.FAILED_LOGIN:
            return count >= limit
        return count > limit

    def record_booking_attempt(
        self,
        subject_key: str,
        email: str | None = None,
        phone: str | None = None,
        user_agent: str | None = None,
    ) -> SecurityStatus:
        """Count one booking against subject, email and phone."""
        self.record_attempt(AttemptKind.SUBJECT, subject_key, user_agent)
        if email:
            self.record_attempt(AttemptKind.EMAIL, email, user_agent)
        if phone:
            self.record_attempt(AttemptKind.PHONE, phone, user_agent)
        return self.check_status(subject_key, email, phone)

    def record_failed_login(self, subject_key: str, user_agent: str | None = None) -> SecurityStatus:
        return self.record_attempt(AttemptKind.FAILED_LOGIN, subject_key, user_agent)

    def attempt_count(self, kind: AttemptKind | str, subject_key: str) -> int:
        kind = AttemptKind(kind)
        subject = _normalize(kind, subject_key)
        if not subject:
            return 0
        return self._count(self._attempts_key(kind, subject))

    # ============================================================
    # SUSPICIOUS ACTIVITY / BLACKLIST
    # ============================================================

    def _record_suspicious(
        self,
        subject: str,
        kind: AttemptKind,
        count: int,
        user_agent: str | None,
    ) -> None:
        suspicious = self._append(
            self._suspicious_key(subject),
            {"kind": kind.value, "count": count, "user_agent_hash": hash_ua(user_agent)},
        )
        if suspicious >= self.config.suspicious_threshold:
            self._save(
                self._blacklist_key(subject),
                {"timestamp": self._clock(), "reason": BLACKLIST_REASON},
                ttl=self.config.blacklist_duration,
            )
            logger.warning(f"Subject blacklisted after {suspicious} suspicious activities")

    def _blacklist_remaining(self, subject: str) -> float:
        entry = self._load(self._blacklist_key(subject))
        if not entry:
            return 0.0
        return max(entry["timestamp"] + self.config.blacklist_duration - self._clock(), 0.0)

    def is_blacklisted(self, subject_key: str) -> bool:
        return any(self._blacklist_remaining(s) > 0 for s in self._identities(subject_key))

    # ============================================================
    # STATUS
    # ============================================================

    def check_status(
        self,
        subject_key: str | None,
        email: str | None = None,
        phone: str | None = None,
    ) -> SecurityStatus:
        """Current gate for a caller. Never suspends, never raises."""
        identities = self._identities(subject_key, email, phone)

        for subject in identities:
            remaining = self._blacklist_remaining(subject)
            if remaining > 0:
                return SecurityStatus(
                    requires_challenge=True,
                    reason=BLACKLIST_REASON,
                    phase=ChallengePhase.REQUIRED,
                    cooldown_remaining=remaining,
                    blacklisted=True,
                )

        for subject in identities:
            status = self._status_for(subject)
            if status.requires_challenge:
                return status

        return SecurityStatus(requires_challenge=False)

    def _status_for(self, subject: str) -> SecurityStatus:
        state = self._load(self._state_key(subject))
        if not state or state.get("phase") == ChallengePhase.CLEAR.value:
            return SecurityStatus(requires_challenge=False)

        category = AttemptKind(state["category"])
        remaining = state["tripped_at"] + self.config.captcha_cooldown - self._clock()
        if remaining <= 0:
            # Cooldown since the triggering attempt elapsed
            self._delete(
                self._attempts_key(category, subject),
                self._state_key(subject),
                self._challenge_key(subject),
            )
            return SecurityStatus(requires_challenge=False)

        attempts_remaining = None
        if category is AttemptKind.FAILED_LOGIN:
            count = self._count(self._attempts_key(category, subject))
            attempts_remaining = max(self.config.max_failed_logins - count, 0)

        return SecurityStatus(
            requires_challenge=True,
            reason=state["reason"],
            phase=ChallengePhase(state["phase"]),
            cooldown_remaining=remaining,
            attempts_remaining=attempts_remaining,
        )

    # ============================================================
    # CHALLENGE
    # ============================================================

    def issue_challenge(self, subject_key: str) -> Challenge:
        """Current challenge of the subject, or a new one."""
        subject = _normalize(AttemptKind.SUBJECT, subject_key)
        session = self._load(self._challenge_key(subject))
        if session:
            return Challenge(question=session["question"], answer=session["answer"])
        return self._new_challenge(subject)

    def _new_challenge(self, subject: str) -> Challenge:
        challenge = generate_challenge(self._rng)
        self._save(
            self._challenge_key(subject),
            {"question": challenge.question, "answer": challenge.answer, "failures": 0},
            ttl=self.config.captcha_cooldown,
        )
        return challenge

    def verify_challenge(
        self,
        subject_key: str,
        answer: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> ChallengeResult:
        subject = _normalize(AttemptKind.SUBJECT, subject_key)
        session = self._load(self._challenge_key(subject))

        if session and verify_answer(answer, session["answer"]):
            status = self.reset_on_success(subject_key, email, phone)
            return ChallengeResult(success=True, status=status)

        status = self.record_failed_challenge(subject_key, email, phone)
        return ChallengeResult(
            success=False,
            status=status,
            question=self.issue_challenge(subject_key).question,
        )

    def record_failed_challenge(
        self,
        subject_key: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> SecurityStatus:
        """
        Count a wrong answer. The third consecutive one regenerates the
        question and moves `required` states to `cooldown`; the expiry
        stays measured from the triggering attempt.
        """
        subject = _normalize(AttemptKind.SUBJECT, subject_key)
        key = self._challenge_key(subject)
        session = self._load(key)
        if not session:
            self._new_challenge(subject)
            session = self._load(key, {"failures": 0})

        failures = session.get("failures", 0) + 1
        if failures < self.config.max_challenge_failures:
            session["failures"] = failures
            self._save(key, session, ttl=self.config.captcha_cooldown)
            return self.check_status(subject_key, email, phone)

        logger.info("Challenge regenerated after repeated failures")
        self._new_challenge(subject)
        for identity in self._identities(subject_key, email, phone):
            state = self._load(self._state_key(identity))
            if state and state.get("phase") == ChallengePhase.REQUIRED.value:
                state["phase"] = ChallengePhase.COOLDOWN.value
                state["expires_at"] = state["tripped_at"] + self.config.captcha_cooldown
                self._save(self._state_key(identity), state, ttl=self.config.tracking_window)
        return self.check_status(subject_key, email, phone)

    def reset_on_success(
        self,
        subject_key: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> SecurityStatus:
        """
        Clear the gate after a solved challenge.

        Only the failed-login counter is dropped; booking attempt history
        stays for continued tracking. Blacklists are not lifted.
        """
        subject = _normalize(AttemptKind.SUBJECT, subject_key)
        keys = [
            self._attempts_key(AttemptKind.FAILED_LOGIN, subject),
            self._challenge_key(subject),
        ]
        keys.extend(self._state_key(i) for i in self._identities(subject_key, email, phone))
        self._delete(*keys)
        return self.check_status(subject_key, email, phone)
