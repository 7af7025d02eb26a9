"""
Redis client
"""
import redis.asyncio as redis
from roboclub.config import get_settings

settings = get_settings()

# Pool sized for bursts of send-otp / login traffic
redis_client = redis.from_url(
    settings.redis_url,
    encoding="utf-8",
    decode_responses=True,
    max_connections=50,
    socket_timeout=5,
    socket_connect_timeout=5,
    retry_on_timeout=True,
    retry_on_error=[redis.ConnectionError, redis.TimeoutError],
    health_check_interval=30,
)


async def get_redis():
    """Redis client dependency"""
    yield redis_client
