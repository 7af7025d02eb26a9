import pytest
from fastapi import HTTPException
from starlette.requests import Request

from roboclub.main import app
from roboclub.routers import auth as auth_router
from roboclub.utils import rate_limiter
from roboclub.utils.rate_limiter import RateLimiter

pytestmark = pytest.mark.anyio

PATH = "/api/auth/send-otp"


def _request(forwarded_for=None) -> Request:
    headers = []
    if forwarded_for:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    return Request({
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("test", 80),
        "path": PATH,
        "query_string": b"",
        "headers": headers,
        "client": ("10.0.0.9", 51000),
    })


@pytest.fixture
def limiter_redis(fake_redis, monkeypatch):
    monkeypatch.setattr(rate_limiter, "redis_client", fake_redis)
    return fake_redis


async def test_blocks_once_window_is_full(limiter_redis):
    limiter = RateLimiter(times=2, seconds=60)

    await limiter(_request())
    await limiter(_request())
    with pytest.raises(HTTPException) as excinfo:
        await limiter(_request())

    key = f"rate_limit:ip:10.0.0.9:{PATH}"
    assert excinfo.value.status_code == 429
    assert limiter_redis.store[key] == "2"
    assert limiter_redis.ttls[key] == 60


async def test_forwarded_chain_keys_on_first_hop(limiter_redis):
    limiter = RateLimiter(times=5, seconds=60)

    await limiter(_request("203.0.113.7, 10.0.0.1"))

    assert limiter_redis.store == {f"rate_limit:ip:203.0.113.7:{PATH}": "1"}


async def test_send_otp_route_is_limited(client, fake_redis, monkeypatch):
    monkeypatch.setattr(rate_limiter, "redis_client", fake_redis)
    app.dependency_overrides.pop(auth_router.send_otp_limiter, None)

    statuses = []
    for _ in range(auth_router.send_otp_limiter.times + 1):
        resp = await client.post(PATH, json={"email": "a@x.com"})
        statuses.append(resp.status_code)

    assert statuses[:-1] == [200] * auth_router.send_otp_limiter.times
    assert statuses[-1] == 429
