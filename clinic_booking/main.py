# clinic_booking/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import Settings, get_settings
from .events.realtime import RealtimeReconciler
from .exceptions import TransientStoreError
from .middleware.abuse_guard import AbuseGuard, GuardConfig
from .redis_client import create_redis_client
from .routers import appointments, security, slots
from .services.appointments import AppointmentService
from .services.cache import APPOINTMENTS_PREFIX, SETTINGS_PREFIX, AvailabilityCache
from .services.kv_store import KeyValueStore, RedisKeyValueStore
from .services.remote_store import HttpRemoteStore, RemoteStore
from .services.slots.availability import AvailabilityService
from .services.slots.config import SchedulingConfigStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    remote: RemoteStore | None = None,
    kv_store: KeyValueStore | None = None,
    guard: AbuseGuard | None = None,
) -> FastAPI:
    """Wire the engine for one clinic and expose it over HTTP."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    remote = remote or HttpRemoteStore(
        settings.store_url,
        api_key=settings.store_api_key,
        timeout=settings.store_timeout,
    )
    kv_store = kv_store or RedisKeyValueStore(create_redis_client(settings))

    cache = AvailabilityCache(
        max_entries=settings.cache_max_entries,
        ttl_by_prefix={
            APPOINTMENTS_PREFIX: settings.appointments_ttl_seconds,
            SETTINGS_PREFIX: settings.settings_ttl_seconds,
        },
    )
    config_store = SchedulingConfigStore(local_store=kv_store, cache=cache)
    reconciler = RealtimeReconciler(
        remote,
        cache,
        settings.clinic_id,
        config_store=config_store,
        invalidate_delay=settings.invalidate_debounce_ms / 1000,
        notify_delay=settings.notify_debounce_ms / 1000,
    )
    availability = AvailabilityService(remote, cache, config_store, ledger=reconciler.ledger)
    guard = guard or AbuseGuard(kv_store, GuardConfig.from_settings(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await reconciler.start()
        except TransientStoreError as e:
            logger.error(f"Realtime feed unavailable, serving from cache/TTL only: {e}")
        yield
        await reconciler.stop()
        if isinstance(remote, HttpRemoteStore):
            await remote.aclose()

    app = FastAPI(title="Clinic Booking Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.reconciler = reconciler
    app.state.availability = availability
    app.state.guard = guard
    app.state.appointments = AppointmentService(remote, reconciler, availability, guard)

    app.include_router(slots.router)
    app.include_router(security.router)
    app.include_router(appointments.router)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "clinic_id": settings.clinic_id,
            "subscriptions": {t: s.state.value for t, s in reconciler.subscriptions.items()},
        }

    return app
