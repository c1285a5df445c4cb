from typing import Annotated

from rhythmhub.auth import (
    PasswordValidity,
    check_password,
    create_access_token,
    create_session,
    delete_session,
    hash_password,
    update_session,
)
from rhythmhub.config import settings
from rhythmhub.database import User
from rhythmhub.dependencies.database import Database, Redis
from rhythmhub.dependencies.user import CurrentUser, session_cookie
from rhythmhub.log import log
from rhythmhub.models.user import LoginRequest, SessionUser, TokenResp

from fastapi import APIRouter, HTTPException, Response, Security
from redis.asyncio import Redis as RedisClient
from sqlmodel import col, or_, select

router = APIRouter(prefix="/session", tags=["会话"])
logger = log("Session")


async def log_in(response: Response, redis: RedisClient, user: SessionUser, session_id: str | None = None) -> TokenResp:
    """写入 session cookie 并签发 JWT"""
    if session_id:
        await update_session(redis, session_id, user)
    else:
        session_id = await create_session(redis, user)
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_expire_seconds,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    return TokenResp(user=user, token=create_access_token(user))


@router.post("", name="登录", response_model=TokenResp)
async def create_session_endpoint(
    session: Database,
    redis: Redis,
    body: LoginRequest,
    response: Response,
):
    """使用 UID 或邮箱登录

    错误情况:
    - 401: 用户不存在或密码错误
    """
    username = body.username.strip().lower()
    user = (
        await session.exec(select(User).where(or_(col(User.uid) == username, col(User.email) == username)))
    ).first()
    if user is None:
        raise HTTPException(401, "Invalid username or password")
    validity = check_password(body.password, user.password)
    if validity == PasswordValidity.INVALID:
        raise HTTPException(401, "Invalid username or password")
    if validity == PasswordValidity.VALID_OUTDATED:
        user.password = hash_password(body.password)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        logger.info(f"Rehashed outdated password for {user.id}")
    return await log_in(response, redis, SessionUser.from_db(user))


@router.get("", name="获取当前会话", response_model=SessionUser)
async def get_session_endpoint(current_user: CurrentUser):
    return current_user


@router.delete("", name="登出", status_code=204)
async def delete_session_endpoint(
    redis: Redis,
    response: Response,
    session_id: Annotated[str | None, Security(session_cookie)] = None,
):
    if session_id:
        await delete_session(redis, session_id)
    response.delete_cookie(settings.session_cookie_name)
    return None
