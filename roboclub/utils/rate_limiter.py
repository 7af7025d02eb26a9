"""
API rate limiter

Counts requests per client IP and path in Redis.
"""
from fastapi import HTTPException, status, Request
from roboclub.utils.redis_client import redis_client


class RateLimiter:
    def __init__(self, times: int = 5, seconds: int = 60):
        """
        Args:
            times: requests allowed inside the window
            seconds: window length in seconds
        """
        self.times = times
        self.seconds = seconds

    async def __call__(self, request: Request):
        if not redis_client:
            return

        key = f"rate_limit:{self._get_client_id(request)}:{request.url.path}"

        current = await redis_client.get(key)

        if current and int(current) >= self.times:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests, please try again later"
            )

        async with redis_client.pipeline() as pipe:
            await pipe.incr(key)
            if not current:
                await pipe.expire(key, self.seconds)
            await pipe.execute()

    def _get_client_id(self, request: Request) -> str:
        ip = request.headers.get("X-Forwarded-For", request.client.host if request.client else "unknown")
        # X-Forwarded-For may carry a proxy chain
        if "," in ip:
            ip = ip.split(",")[0].strip()
        return f"ip:{ip}"
