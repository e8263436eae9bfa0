"""ARQ (Async Redis Queue) configuration utilities.

Parses the application's REDIS_URL into ARQ RedisSettings for the
fulfillment worker.
"""

from urllib.parse import urlparse

from arq.connections import RedisSettings
from libs.common.config import get_settings


def get_redis_settings(redis_url: str | None = None) -> RedisSettings:
    """Build ARQ RedisSettings from a redis:// URL (defaults to settings)."""
    parsed = urlparse(redis_url or get_settings().REDIS_URL)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        database=int(parsed.path.lstrip("/") or "0"),
        password=parsed.password,
        ssl=parsed.scheme == "rediss",
    )
