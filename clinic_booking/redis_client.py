# clinic_booking/redis_client.py

from redis import Redis

from .config import Settings, get_settings


def create_redis_client(settings: Settings | None = None) -> Redis:
    """Build a Redis client from the given settings (decoded responses)."""
    settings = settings or get_settings()
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
    )
