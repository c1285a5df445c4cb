import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("CHECKSUM_TOKEN", "test-checksum-token")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from collections.abc import AsyncIterator  # noqa: E402

from rhythmhub import database as _tables  # noqa: E402, F401
from rhythmhub.const import Role  # noqa: E402
from rhythmhub.database import User  # noqa: E402
from rhythmhub.dependencies import database as database_dependency  # noqa: E402
from rhythmhub.dependencies.database import get_db, get_redis  # noqa: E402
from rhythmhub.main import app  # noqa: E402

from .factories import create_user  # noqa: E402

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    database_dependency._engine = engine
    yield engine
    database_dependency._engine = None
    await engine.dispose()


@pytest.fixture
async def session(engine) -> AsyncIterator[AsyncSession]:
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def client(engine, redis) -> AsyncIterator[httpx.AsyncClient]:
    async def override_get_db():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def alice(session) -> User:
    return await create_user(session, "alice", email="alice@example.com")


@pytest.fixture
async def bob(session) -> User:
    return await create_user(session, "bob", email="bob@example.com")


@pytest.fixture
async def moderator(session) -> User:
    return await create_user(session, "mod", email="mod@example.com", role=Role.MODERATOR)
