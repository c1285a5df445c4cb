from typing import Annotated

from rhythmhub.auth import get_session, verify_access_token
from rhythmhub.config import settings
from rhythmhub.models.user import SessionUser

from .database import Redis

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyCookie, HTTPAuthorizationCredentials, HTTPBearer

session_cookie = APIKeyCookie(name=settings.session_cookie_name, auto_error=False, description="登录会话")
bearer = HTTPBearer(auto_error=False, description="JWT")


async def get_optional_user(
    redis: Redis,
    session_id: Annotated[str | None, Security(session_cookie)] = None,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer)] = None,
) -> SessionUser | None:
    """依次尝试 session cookie 和 Bearer JWT，失败时视为未登录"""
    if session_id:
        user = await get_session(redis, session_id)
        if user is not None:
            return user
    if credentials is not None:
        return verify_access_token(credentials.credentials)
    return None


async def get_current_user(
    user: Annotated[SessionUser | None, Depends(get_optional_user)],
) -> SessionUser:
    if user is None:
        raise HTTPException(401, "Unauthorized")
    return user


CurrentUser = Annotated[SessionUser, Depends(get_current_user)]
OptionalUser = Annotated[SessionUser | None, Depends(get_optional_user)]
