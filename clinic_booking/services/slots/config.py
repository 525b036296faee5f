# clinic_booking/services/slots/config.py
"""
Scheduling configuration store.

Resolution order for a clinic:
    1. value installed from the remote store (takes precedence once loaded)
    2. value set locally / bootstrapped from the local key-value store
    3. defaults (09:00–18:00, break 13:00–14:00, 30 min, no holidays)
"""

import logging
from datetime import date, time
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from ...exceptions import StorageUnavailableError, ValidationError
from ...schemas.scheduling import SchedulingConfig
from ..cache import AvailabilityCache
from ..kv_store import KeyValueStore
from .invalidator import invalidate_clinic_settings

logger = logging.getLogger(__name__)

# Record columns the remote store may send that are not part of the config
_REMOTE_ONLY_FIELDS = ("id", "created_at", "notification_settings")


def time_str_to_minutes(value: str | time) -> int:
    """Convert "HH:MM" (or a time) to minutes since midnight."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    hour, minute = value.split(":")[:2]
    return int(hour) * 60 + int(minute)


def minutes_to_time_str(minutes: int) -> str:
    """Convert minutes since midnight to "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def weekday_index(target_date: date) -> int:
    """Weekday index in the clinic convention: 0 = Sunday ... 6 = Saturday."""
    return (target_date.weekday() + 1) % 7


def build_config(clinic_id: str, data: Mapping[str, Any]) -> SchedulingConfig:
    """Validate a config mapping, filling missing fields from defaults."""
    payload = {k: v for k, v in data.items() if v is not None and k not in _REMOTE_ONLY_FIELDS}
    payload["clinic_id"] = clinic_id
    try:
        return SchedulingConfig.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid scheduling config for clinic {clinic_id}: {e}") from e


class SchedulingConfigStore:
    """Typed per-clinic configuration with validated defaults."""

    KEY_PREFIX = "scheduling_config"

    def __init__(
        self,
        local_store: KeyValueStore | None = None,
        cache: AvailabilityCache | None = None,
    ):
        self.local_store = local_store
        self.cache = cache
        self._configs: dict[str, SchedulingConfig] = {}
        self._remote_loaded: set[str] = set()

    def _key(self, clinic_id: str) -> str:
        return f"{self.KEY_PREFIX}:{clinic_id}"

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, clinic_id: str) -> SchedulingConfig:
        config = self._configs.get(clinic_id)
        if config is not None:
            return config

        bootstrap = self._read_local(clinic_id)
        if bootstrap is not None:
            try:
                config = build_config(clinic_id, bootstrap)
            except ValidationError:
                logger.warning(f"Ignoring invalid bootstrap config for clinic {clinic_id}")
                config = None
        if config is None:
            config = SchedulingConfig(clinic_id=clinic_id)

        self._configs[clinic_id] = config
        return config

    def is_remote_loaded(self, clinic_id: str) -> bool:
        return clinic_id in self._remote_loaded

    # ── Write ────────────────────────────────────────────────────────────

    def set(self, clinic_id: str, partial: Mapping[str, Any]) -> SchedulingConfig:
        """
        Merge `partial` over the current config, validate and persist.

        Raises:
            ValidationError: the merged config is invalid (nothing is changed)
        """
        current = self.get(clinic_id).model_dump()
        current.update(partial)
        config = build_config(clinic_id, current)

        self._configs[clinic_id] = config
        self._write_local(clinic_id, config)
        if self.cache is not None:
            invalidate_clinic_settings(self.cache, clinic_id)
        logger.info(f"Scheduling config updated for clinic {clinic_id}")
        return config

    def apply_remote(self, clinic_id: str, record: Mapping[str, Any] | None) -> SchedulingConfig:
        """
        Install the remote store's record. Missing fields take defaults,
        not local values: the remote record is authoritative.

        A None record (row deleted remotely) reverts to defaults.
        """
        config = build_config(clinic_id, record or {})
        self._configs[clinic_id] = config
        self._remote_loaded.add(clinic_id)
        self._write_local(clinic_id, config)
        return config

    # ── Local persistence ────────────────────────────────────────────────

    def _read_local(self, clinic_id: str) -> dict | None:
        if self.local_store is None:
            return None
        try:
            return self.local_store.get(self._key(clinic_id))
        except StorageUnavailableError as e:
            logger.warning(f"Bootstrap config unavailable for clinic {clinic_id}: {e}")
            return None

    def _write_local(self, clinic_id: str, config: SchedulingConfig) -> None:
        if self.local_store is None:
            return
        try:
            self.local_store.set(self._key(clinic_id), config.model_dump(mode="json"))
        except StorageUnavailableError as e:
            logger.warning(f"Failed to persist config for clinic {clinic_id}: {e}")
