from rhythmhub.config import settings
from rhythmhub.log import log
from rhythmhub.models.user import ExternalProviderSession

from pydantic import ValidationError
from redis.asyncio import Redis

logger = log("External")


def external_session_key(provider: str, token: str) -> str:
    return f"{settings.redis_prefix}:external:{provider}:{token}"


async def get_external_provider_session(redis: Redis, provider: str, token: str) -> ExternalProviderSession | None:
    """第三方登录回调写入的会话 (JSON: id, token, email)"""
    data = await redis.get(external_session_key(provider, token))
    if not data:
        return None
    try:
        return ExternalProviderSession.model_validate_json(data)
    except ValidationError as e:
        logger.warning(f"Invalid {provider} session: {e}")
        return None
