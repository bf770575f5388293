"""Redis client for the balance cache and distributed locks.

Redis is optional: without a configured URL get_redis() returns None and
callers fall back to database-only behaviour.
"""

from redis.asyncio import ConnectionPool, Redis

from prizeflow.config import Settings

# Global Redis connection pool and client instance
redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None


async def init_redis(settings: Settings) -> Redis | None:
    """Initialize the shared Redis client if a URL is configured."""
    global redis_pool, redis_client

    if not settings.redis_url:
        return None

    redis_pool = ConnectionPool.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        retry_on_timeout=True,
        encoding="utf-8",
        decode_responses=True,
    )
    redis_client = Redis(connection_pool=redis_pool)

    # Test connection
    await redis_client.ping()
    return redis_client


async def close_redis() -> None:
    """Close Redis connection and pool."""
    global redis_pool, redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None


def get_redis() -> Redis | None:
    """Return the shared client, or None when Redis is not configured."""
    return redis_client
