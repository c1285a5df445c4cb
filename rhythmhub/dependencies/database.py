from collections.abc import AsyncIterator
from typing import Annotated

from rhythmhub.config import settings

from fastapi import Depends
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

_engine: AsyncEngine | None = None
_redis_client: redis.Redis | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_pre_ping=True,
        )
    return _engine


def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def close_connections() -> None:
    global _engine, _redis_client
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


Database = Annotated[AsyncSession, Depends(get_db)]
Redis = Annotated[redis.Redis, Depends(get_redis)]
