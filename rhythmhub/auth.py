from datetime import timedelta
from enum import Enum
from functools import lru_cache
import secrets

from rhythmhub.config import settings
from rhythmhub.log import log
from rhythmhub.models.user import SessionUser
from rhythmhub.utils import utcnow

import jwt
from passlib.context import CryptContext
from pydantic import ValidationError
from redis.asyncio import Redis

logger = log("Auth")


class PasswordValidity(Enum):
    INVALID = 0
    VALID = 1
    # 密码正确，但哈希的 cost 低于当前配置，需要重新哈希
    VALID_OUTDATED = 2


@lru_cache
def _password_context(rounds: int) -> CryptContext:
    # cost 低于 rounds 的哈希会被 needs_update 标记
    return CryptContext(
        schemes=["bcrypt"],
        deprecated="auto",
        bcrypt__default_rounds=rounds,
        bcrypt__min_rounds=rounds,
    )


def hash_password(password: str) -> str:
    return _password_context(settings.bcrypt_rounds).hash(password)


def check_password(password: str, hashed: str | None) -> PasswordValidity:
    if not hashed:
        return PasswordValidity.INVALID
    context = _password_context(settings.bcrypt_rounds)
    try:
        if not context.verify(password, hashed):
            return PasswordValidity.INVALID
    except ValueError:
        logger.warning("Malformed password hash")
        return PasswordValidity.INVALID
    if context.needs_update(hashed):
        return PasswordValidity.VALID_OUTDATED
    return PasswordValidity.VALID


def create_access_token(user: SessionUser) -> str:
    now = utcnow()
    payload = {
        # sub 必须是字符串，存放序列化后的用户信息
        "sub": user.model_dump_json(),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> SessionUser | None:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
        return SessionUser.model_validate_json(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValidationError):
        return None


def _session_key(session_id: str) -> str:
    return f"{settings.redis_prefix}:session:{session_id}"


async def create_session(redis: Redis, user: SessionUser) -> str:
    session_id = secrets.token_urlsafe(32)
    await redis.setex(_session_key(session_id), settings.session_expire_seconds, user.model_dump_json())
    return session_id


async def get_session(redis: Redis, session_id: str) -> SessionUser | None:
    data = await redis.get(_session_key(session_id))
    if not data:
        return None
    try:
        return SessionUser.model_validate_json(data)
    except ValidationError:
        logger.warning(f"Discarding malformed session {session_id[:8]}...")
        await redis.delete(_session_key(session_id))
        return None


async def update_session(redis: Redis, session_id: str, user: SessionUser) -> None:
    await redis.setex(_session_key(session_id), settings.session_expire_seconds, user.model_dump_json())


async def delete_session(redis: Redis, session_id: str) -> None:
    await redis.delete(_session_key(session_id))
