from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel.ext.asyncio.session import AsyncSession


def insert_for(session: AsyncSession, model: Any) -> Any:
    """按当前连接的方言返回支持 `ON CONFLICT` 的 insert 语句"""
    bind = session.bind
    if bind is not None and bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
