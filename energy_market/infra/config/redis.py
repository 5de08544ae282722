import redis.asyncio as redis
from functools import lru_cache

from energy_market.infra.config.settings import get_settings
from energy_market.core.logger.logger import get_logger

logger = get_logger(__name__)


@lru_cache()
def get_redis_pool() -> redis.ConnectionPool:
    """Shared Redis connection pool for sessions and sign-in challenges"""
    settings = get_settings()
    return redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS
    )


async def connect_redis() -> redis.Redis:
    """Open a client on the shared pool and check the server answers"""
    try:
        client = redis.Redis(connection_pool=get_redis_pool())
        await client.ping()
        logger.info("Connected to Redis", extra={"redis_url": get_settings().REDIS_URL})
        return client
    except Exception as e:
        logger.error("Failed to connect to Redis", extra={"error": str(e)})
        raise


async def close_redis_pool() -> None:
    """Disconnect every pooled connection on shutdown"""
    await get_redis_pool().disconnect()
    get_redis_pool.cache_clear()
