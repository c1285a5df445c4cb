from rhythmhub.config import settings
from rhythmhub.database.level_rating import RatingSummary

from pydantic import ValidationError
from redis.asyncio import Redis


def rating_cache_key(level_uid: str) -> str:
    return f"{settings.redis_prefix}:level:ratings:{level_uid}"


async def get_cached_ratings(redis: Redis, level_uid: str) -> RatingSummary | None:
    data = await redis.get(rating_cache_key(level_uid))
    if not data:
        return None
    try:
        return RatingSummary.model_validate_json(data)
    except ValidationError:
        await redis.delete(rating_cache_key(level_uid))
        return None


async def set_cached_ratings(redis: Redis, level_uid: str, summary: RatingSummary) -> None:
    # 个人评分不进入缓存
    await redis.setex(
        rating_cache_key(level_uid),
        settings.rating_cache_ttl,
        summary.model_dump_json(exclude={"rating"}),
    )


async def invalidate_ratings(redis: Redis, level_uid: str) -> None:
    await redis.delete(rating_cache_key(level_uid))
