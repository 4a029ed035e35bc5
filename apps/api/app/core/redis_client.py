"""Redis client helpers with connection pooling."""

from __future__ import annotations

from app.core.config import get_settings

REDIS_DISABLED_URL = "memory://"
DEFAULT_REDIS_MAX_CONNECTIONS = 20
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_HEALTH_CHECK_SECONDS = 30

_sync_client = None


def get_redis_url() -> str | None:
    url = get_settings().redis_url
    if not url or url.strip().lower() == REDIS_DISABLED_URL:
        return None
    return url.strip()


def get_sync_redis_client():
    url = get_redis_url()
    if not url:
        return None

    global _sync_client
    if _sync_client is None:
        import redis

        # No socket timeout: channel consumers block in BLPOP for longer than any fixed read timeout.
        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=DEFAULT_REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
            health_check_interval=DEFAULT_REDIS_HEALTH_CHECK_SECONDS,
            retry_on_timeout=True,
        )
        _sync_client = redis.Redis(connection_pool=pool)
    return _sync_client
