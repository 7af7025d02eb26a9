import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

import roboclub.models  # noqa: F401
from roboclub.database import Base, build_engine, build_session_factory
from roboclub.main import app
from roboclub.models.otp_code import OtpCode
from roboclub.routers import auth as auth_router
from roboclub.services.email_service import DispatchResult
from roboclub.utils.redis_client import get_redis


class Outbox:
    """Notification channel that records codes instead of emailing them"""

    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    def __call__(self, to_email, code, purpose, name=""):
        if self.fail:
            return DispatchResult(success=False, error="smtp unavailable")
        self.sent.append({"email": to_email, "code": code, "purpose": purpose, "name": name})
        return DispatchResult(success=True)

    def last_code(self, email: str) -> str:
        for message in reversed(self.sent):
            if message["email"] == email:
                return message["code"]
        raise AssertionError(f"no code sent to {email}")


class FakePipeline:
    def __init__(self, redis) -> None:
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def incr(self, key):
        self.commands.append((self.redis.incr, (key,)))

    async def expire(self, key, seconds):
        self.commands.append((self.redis.expire, (key, seconds)))

    async def execute(self):
        results = [await command(*args) for command, args in self.commands]
        self.commands = []
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def incr(self, key):
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def delete(self, key):
        self.store.pop(key, None)

    def pipeline(self):
        return FakePipeline(self)


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def fetch_otps(session_factory, email: str):
    async with session_factory() as session:
        result = await session.execute(select(OtpCode).where(OtpCode.email == email))
        return result.scalars().all()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def file_engine(tmp_path):
    """On-disk database; each session gets its own connection so concurrent requests interleave"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'roboclub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return build_session_factory(file_engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
async def client(session_factory, outbox, fake_redis):
    app.state.session_factory = session_factory
    app.dependency_overrides[auth_router.get_otp_sender] = lambda: outbox
    app.dependency_overrides[auth_router.send_otp_limiter] = lambda: None
    app.dependency_overrides[get_redis] = lambda: fake_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
