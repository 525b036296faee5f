# clinic_booking/exceptions.py
"""
Error taxonomy for the scheduling engine.

RemoteStoreError
├── TransientStoreError   network / timeout, caller may retry
└── SlotConflictError     store rejected a second booking for the slot
SlotUnavailableError      local pre-check found the slot occupied
ValidationError           malformed configuration or slot request
ChallengeRequired         control-flow signal from AbuseGuard
StaleWriteRejected        optimistic write superseded by newer server state
StorageUnavailableError   key-value store (counters, bootstrap config) is down
"""

from typing import Any


class BookingError(Exception):
    """Base class for all engine errors."""


class RemoteStoreError(BookingError):
    """Remote store returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(RemoteStoreError):
    """Network or timeout failure. Never retried automatically."""


class SlotConflictError(RemoteStoreError):
    """The store already holds a non-cancelled appointment for the slot."""


class SlotUnavailableError(BookingError):
    """Slot is known locally to be taken, disabled or in the past."""


class ValidationError(BookingError, ValueError):
    """Configuration or request failed validation."""


class StorageUnavailableError(BookingError):
    """Key-value storage backend is unreachable."""


class StaleWriteRejected(BookingError):
    """Optimistic write was superseded by a newer server-confirmed state."""

    def __init__(self, entity_id: str, message: str | None = None):
        super().__init__(message or f"Write to {entity_id} superseded by newer server state")
        self.entity_id = entity_id


class ChallengeRequired(BookingError):
    """
    Raised on the write path when AbuseGuard demands a challenge.

    Carries the SecurityStatus so callers can surface the reason.
    """

    def __init__(self, status: Any):
        super().__init__(status.reason)
        self.status = status
