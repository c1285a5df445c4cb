from rhythmhub.calculator import weighted_rating
from rhythmhub.const import RATING_MAX, RATING_MIN

from .upsert import insert_for

from pydantic import BaseModel
from sqlalchemy import Column, ForeignKey, String, UniqueConstraint, delete
from sqlmodel import Field, SQLModel, col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession


class LevelRating(SQLModel, table=True):
    __tablename__: str = "level_ratings"
    __table_args__ = (UniqueConstraint("level_id", "user_id", name="level_ratings_level_id_user_id_key"),)

    id: int | None = Field(default=None, primary_key=True)
    level_id: int = Field(sa_column=Column(ForeignKey("levels.id", ondelete="CASCADE"), index=True, nullable=False))
    user_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))
    rating: int


class RatingSummary(BaseModel):
    average: float | None = None
    weighted: float | None = None
    total: int = 0
    distribution: list[int]
    rating: int | None = None


async def get_rating_summary(session: AsyncSession, level_id: int) -> RatingSummary:
    """评分均值、总数和 1-10 分布，distribution[i] 为 i + 1 分的票数"""
    rows = (
        await session.exec(
            select(col(LevelRating.rating), func.count(col(LevelRating.id)))
            .where(col(LevelRating.level_id) == level_id)
            .group_by(col(LevelRating.rating))
        )
    ).all()
    distribution = [0] * (RATING_MAX - RATING_MIN + 1)
    total = 0
    total_points = 0
    for rating, count in rows:
        if RATING_MIN <= rating <= RATING_MAX:
            distribution[rating - RATING_MIN] += count
        total += count
        total_points += rating * count
    average = total_points / total if total else None
    return RatingSummary(
        average=average,
        weighted=weighted_rating(average, total),
        total=total,
        distribution=distribution,
    )


async def get_user_rating(session: AsyncSession, level_id: int, user_id: str) -> int | None:
    return (
        await session.exec(
            select(col(LevelRating.rating)).where(
                col(LevelRating.level_id) == level_id,
                col(LevelRating.user_id) == user_id,
            )
        )
    ).first()


async def upsert_rating(session: AsyncSession, level_id: int, user_id: str, rating: int) -> None:
    stmt = insert_for(session, LevelRating).values(level_id=level_id, user_id=user_id, rating=rating)
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=["level_id", "user_id"],
            set_={"rating": stmt.excluded.rating},
        )
    )


async def delete_rating(session: AsyncSession, level_id: int, user_id: str) -> int:
    result = await session.execute(
        delete(LevelRating).where(
            col(LevelRating.level_id) == level_id,
            col(LevelRating.user_id) == user_id,
        )
    )
    return result.rowcount
