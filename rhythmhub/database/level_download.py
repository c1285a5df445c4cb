from datetime import datetime

from rhythmhub.utils import utcnow

from .upsert import insert_for

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel, col
from sqlmodel.ext.asyncio.session import AsyncSession


class LevelDownload(SQLModel, table=True):
    __tablename__: str = "level_downloads"
    __table_args__ = (UniqueConstraint("level_id", "user_id", name="level_downloads_level_id_user_id_key"),)

    id: int | None = Field(default=None, primary_key=True)
    level_id: int = Field(sa_column=Column(ForeignKey("levels.id", ondelete="CASCADE"), index=True, nullable=False))
    user_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))
    date: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    count: int = Field(default=1)


async def process_level_download(session: AsyncSession, level_id: int, user_id: str) -> None:
    """每个用户每个谱面一行，重复下载时 count + 1 并刷新时间"""
    now = utcnow()
    stmt = insert_for(session, LevelDownload).values(level_id=level_id, user_id=user_id, date=now, count=1)
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=["level_id", "user_id"],
            set_={"count": col(LevelDownload.count) + 1, "date": now},
        )
    )
