from typing import Annotated

from rhythmhub.calculator import calculate_exp, personal_rating
from rhythmhub.database import ActivityStatistics, Profile, ProfileResp, User, UserResp
from rhythmhub.database.record import get_activity, get_exp_plays, get_grade_distribution, get_rating_plays
from rhythmhub.dependencies.database import Database

from fastapi import APIRouter, HTTPException, Path
from pydantic import BaseModel
from sqlmodel import select

router = APIRouter(prefix="/profile", tags=["个人资料"])


class ExpResp(BaseModel):
    basic_exp: float
    level_exp: float
    total_exp: float
    current_level: float
    next_level_exp: float


class ProfileStatsResp(BaseModel):
    user: UserResp
    profile: ProfileResp | None
    rating: float | None
    grade: dict[str, int]
    activities: ActivityStatistics
    exp: ExpResp


@router.get("/{id}", name="获取个人资料", response_model=ProfileStatsResp)
async def get_profile(
    session: Database,
    id: Annotated[str, Path(description="用户 uuid 或 uid")],
):
    """用户资料与统计

    - rating: 所有成绩的表现分平均值
    - grade: 各评级的成绩数
    - activities: ranked 成绩的统计
    - exp: 经验值与等级
    """
    user = (await session.exec(select(User).where(User.lookup(id)))).first()
    if user is None:
        raise HTTPException(404, "User not found")
    profile = await session.get(Profile, user.id)
    exp = calculate_exp(await get_exp_plays(session, user.id))
    return ProfileStatsResp(
        user=UserResp.from_db(user),
        profile=ProfileResp.model_validate(profile, from_attributes=True) if profile else None,
        rating=personal_rating(await get_rating_plays(session, user.id)),
        grade=await get_grade_distribution(session, user.id),
        activities=await get_activity(session, user.id),
        exp=ExpResp(
            basic_exp=exp.basic_exp,
            level_exp=exp.level_exp,
            total_exp=exp.total_exp,
            current_level=exp.current_level,
            next_level_exp=exp.next_level_exp,
        ),
    )
