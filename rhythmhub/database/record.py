from collections.abc import Sequence
from datetime import datetime
from typing import Any

from rhythmhub.calculator import ExpPlay
from rhythmhub.const import GRADE_THRESHOLDS, Grade
from rhythmhub.models.model import UTCBaseModel
from rhythmhub.utils import is_uuid, utcnow

from .chart import Chart
from .level import Level
from .user import User, UserSummary

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, case, text
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.selectable import CTE
from sqlmodel import Field, SQLModel, col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession


class RecordDetails(BaseModel):
    perfect: int = PydanticField(default=0, ge=0)
    great: int = PydanticField(default=0, ge=0)
    good: int = PydanticField(default=0, ge=0)
    bad: int = PydanticField(default=0, ge=0)
    miss: int = PydanticField(default=0, ge=0)
    max_combo: int = PydanticField(default=0, ge=0)


class RecordBase(SQLModel, UTCBaseModel):
    score: int = Field(sa_column=Column(Integer, nullable=False))
    accuracy: float = Field(sa_column=Column(Float, nullable=False))
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    mods: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    ranked: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, index=True))
    date: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))


class Record(RecordBase, table=True):
    __tablename__: str = "records"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))
    chart_id: int = Field(sa_column=Column(ForeignKey("charts.id", ondelete="CASCADE"), index=True, nullable=False))


class NewRecordResp(SQLModel):
    id: int
    chart_id: int


class LeaderboardEntry(UTCBaseModel):
    id: int
    rank: int
    date: datetime
    score: int
    accuracy: float
    details: dict[str, Any]
    mods: list[str]
    owner: UserSummary


class ActivityStatistics(BaseModel):
    total_ranked_plays: int = 0
    cleared_notes: int = 0
    max_combo: int = 0
    average_ranked_accuracy: float | None = None
    total_ranked_score: int = 0


def _leaderboard_cte(chart_id: int) -> CTE:
    """每个玩家只保留最好的一条 ranked 成绩（分数最高，同分取最早），再按 score DESC, date ASC 排名"""
    best = (
        select(
            col(Record.id).label("id"),
            col(Record.owner_id).label("owner_id"),
            col(Record.date).label("date"),
            col(Record.score).label("score"),
            col(Record.accuracy).label("accuracy"),
            col(Record.details).label("details"),
            col(Record.mods).label("mods"),
            func.row_number()
            .over(
                partition_by=col(Record.owner_id),
                order_by=(col(Record.score).desc(), col(Record.date).asc()),
            )
            .label("rn"),
        )
        .where(col(Record.chart_id) == chart_id, col(Record.ranked).is_(True))
        .subquery("best")
    )
    return (
        select(
            best.c.id,
            best.c.owner_id,
            best.c.date,
            best.c.score,
            best.c.accuracy,
            best.c.details,
            best.c.mods,
            func.rank().over(order_by=(best.c.score.desc(), best.c.date.asc())).label("rank"),
        )
        .where(best.c.rn == 1)
        .cte("lb")
    )


def _select_entries(lb: CTE):
    return (
        select(
            lb.c.id,
            lb.c.rank,
            lb.c.date,
            lb.c.score,
            lb.c.accuracy,
            lb.c.details,
            lb.c.mods,
            User,
        )
        .join(User, col(User.id) == lb.c.owner_id)
        .order_by(lb.c.rank, lb.c.date, lb.c.id)
    )


def _to_entries(rows: Sequence[Any]) -> list[LeaderboardEntry]:
    return [
        LeaderboardEntry(
            id=record_id,
            rank=int(rank),
            date=date,
            score=score,
            accuracy=accuracy,
            details=details or {},
            mods=mods or [],
            owner=UserSummary.from_db(user),
        )
        for record_id, rank, date, score, accuracy, details, mods, user in rows
    ]


async def get_leaderboard(
    session: AsyncSession,
    chart_id: int,
    limit: int = 10,
    page: int = 0,
) -> list[LeaderboardEntry]:
    lb = _leaderboard_cte(chart_id)
    rows = (await session.exec(_select_entries(lb).limit(limit).offset(limit * page))).all()
    return _to_entries(rows)


async def get_leaderboard_around_user(
    session: AsyncSession,
    chart_id: int,
    user: str,
    window: int = 3,
) -> list[LeaderboardEntry]:
    """以指定玩家为中心，返回排名差不超过 window 的条目"""
    lb = _leaderboard_cte(chart_id)
    owner_id: ColumnElement[Any] | str
    if is_uuid(user):
        owner_id = user.lower()
    else:
        owner_id = select(User.id).where(col(User.uid) == user.lower()).scalar_subquery()
    user_rank = select(lb.c.rank).where(lb.c.owner_id == owner_id).scalar_subquery()
    rows = (await session.exec(_select_entries(lb).where(func.abs(lb.c.rank - user_rank) <= window))).all()
    return _to_entries(rows)


async def count_ranked_players(session: AsyncSession, chart_id: int) -> int:
    return (
        await session.exec(
            select(func.count(func.distinct(Record.owner_id))).where(
                col(Record.chart_id) == chart_id, col(Record.ranked).is_(True)
            )
        )
    ).one()


async def get_grade_distribution(session: AsyncSession, user_id: str) -> dict[str, int]:
    grade_expr = case(
        *[(col(Record.score) >= threshold, g.value) for threshold, g in GRADE_THRESHOLDS],
        else_=Grade.F.value,
    ).label("grade")
    rows = (
        await session.exec(
            select(grade_expr, func.count(col(Record.id))).where(col(Record.owner_id) == user_id).group_by(text("grade"))
        )
    ).all()
    return {grade: count for grade, count in rows}


async def get_activity(session: AsyncSession, user_id: str) -> ActivityStatistics:
    row = (
        await session.exec(
            select(
                func.count(col(Record.id)),
                func.sum(col(Chart.notes_count)),
                func.max(col(Record.details)["max_combo"].as_integer()),
                func.avg(col(Record.accuracy)),
                func.sum(col(Record.score)),
            )
            .join(Chart, col(Chart.id) == col(Record.chart_id))
            .where(col(Record.owner_id) == user_id, col(Record.ranked).is_(True))
        )
    ).one()
    plays, notes, max_combo, accuracy, score = row
    return ActivityStatistics(
        total_ranked_plays=plays or 0,
        cleared_notes=int(notes or 0),
        max_combo=int(max_combo or 0),
        average_ranked_accuracy=float(accuracy) if accuracy is not None else None,
        total_ranked_score=int(score or 0),
    )


async def get_rating_plays(session: AsyncSession, user_id: str) -> list[tuple[float, float]]:
    """(accuracy, difficulty)"""
    rows = (
        await session.exec(
            select(col(Record.accuracy), col(Chart.difficulty))
            .join(Chart, col(Chart.id) == col(Record.chart_id))
            .where(col(Record.owner_id) == user_id)
        )
    ).all()
    return [(float(accuracy), float(difficulty)) for accuracy, difficulty in rows]


async def get_exp_plays(session: AsyncSession, user_id: str) -> list[ExpPlay]:
    rows = (
        await session.exec(
            select(
                col(Level.id),
                col(Chart.notes_count),
                col(Chart.difficulty),
                col(Level.duration),
                col(Record.score),
                col(Record.ranked),
            )
            .join(Chart, col(Chart.id) == col(Record.chart_id))
            .join(Level, col(Level.id) == col(Chart.level_id))
            .where(col(Record.owner_id) == user_id)
        )
    ).all()
    return [
        ExpPlay(
            level_id=level_id,
            notes_count=notes_count,
            difficulty=float(difficulty),
            duration=float(duration),
            score=score,
            ranked=ranked,
        )
        for level_id, notes_count, difficulty, duration, score, ranked in rows
    ]
