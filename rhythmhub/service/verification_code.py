import secrets

from rhythmhub.config import settings

from redis.asyncio import Redis


class VerificationCodeManager:
    """一次性验证码，token -> value 存在 redis 中"""

    def __init__(self, purpose: str, expire_seconds: int):
        self.purpose = purpose
        self.expire_seconds = expire_seconds

    def _key(self, token: str) -> str:
        return f"{settings.redis_prefix}:code:{self.purpose}:{token}"

    async def generate(self, redis: Redis, value: str) -> str:
        token = secrets.token_urlsafe(24)
        await redis.setex(self._key(token), self.expire_seconds, value)
        return token

    async def consume(self, redis: Redis, token: str) -> str | None:
        """取出并作废"""
        return await redis.getdel(self._key(token))


email_verification = VerificationCodeManager("email_verification", settings.email_verification_expire_seconds)
