from collections import Counter
import copy
import math
from typing import Annotated, Any

from rhythmhub.calculator import clamp
from rhythmhub.config import settings
from rhythmhub.const import GLOBAL_VISIBLE_CENSORSHIP, ChartType
from rhythmhub.database import (
    Chart,
    ChartInfo,
    ChartResp,
    File,
    FileResp,
    LeaderboardEntry,
    Level,
    LevelDetailResp,
    LevelDownload,
    LevelListItem,
    LevelRating,
    LevelTag,
    NewRecordResp,
    RatingSummary,
    Record,
    User,
    UserSummary,
)
from rhythmhub.database.chart import get_chart
from rhythmhub.database.level_download import process_level_download
from rhythmhub.database.level_rating import delete_rating, get_rating_summary, get_user_rating, upsert_rating
from rhythmhub.database.level_search import search_levels
from rhythmhub.database.record import count_ranked_players, get_leaderboard, get_leaderboard_around_user
from rhythmhub.dependencies.database import Database, Redis
from rhythmhub.dependencies.user import CurrentUser, OptionalUser
from rhythmhub.log import log
from rhythmhub.models.level import (
    LEVEL_SORTS,
    LevelAdminUpdate,
    LevelSearchQuery,
    NewRecord,
    PackageResp,
    RatingUpdate,
    TimeseriesEntry,
)
from rhythmhub.models.user import SessionUser
from rhythmhub.service.events import on_level_published
from rhythmhub.service.rating_cache import get_cached_ratings, invalidate_ratings, set_cached_ratings
from rhythmhub.utils import sign_url

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Path, Query, Response
from fastapi.responses import RedirectResponse
from redis.asyncio import Redis as RedisClient
from sqlalchemy import delete
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/levels", tags=["谱面"])
logger = log("Level")

LevelUid = Annotated[str, Path(description="谱面 UID")]
ChartTypePath = Annotated[ChartType, Path(description="谱面类型")]

# 只有管理员可以修改的字段
ADMIN_FIELDS = {"featured", "censored"}


async def _get_level(session: AsyncSession, uid: str) -> Level:
    level = (await session.exec(select(Level).where(col(Level.uid) == uid))).first()
    if level is None:
        raise HTTPException(404, "Level not found")
    return level


async def _level_detail(session: AsyncSession, level: Level) -> LevelDetailResp:
    charts = (
        await session.exec(
            select(Chart).where(col(Chart.level_id) == level.id).order_by(col(Chart.difficulty), col(Chart.id))
        )
    ).all()
    tags = (
        await session.exec(
            select(LevelTag.name).where(col(LevelTag.level_id) == level.id).order_by(col(LevelTag.name))
        )
    ).all()
    owner = await session.get(User, level.owner_id)
    bundle = await session.get(File, level.bundle_path) if level.bundle_path else None
    package = await session.get(File, level.package_path) if level.package_path else None
    return LevelDetailResp.from_db(
        level,
        owner=UserSummary.from_db(owner) if owner else None,
        charts=[ChartResp.model_validate(c, from_attributes=True) for c in charts],
        tags=list(tags),
        bundle=FileResp.model_validate(bundle, from_attributes=True) if bundle else None,
        package_size=package.size if package else None,
    )


def _can_read_any(level: Level, user: SessionUser | None) -> bool:
    if user is None:
        return False
    return user.id == level.owner_id or user.role.can_manage_levels()


@router.get("", name="谱面列表", response_model=list[LevelListItem] | None)
async def get_levels(
    session: Database,
    response: Response,
    current_user: OptionalUser,
    page: Annotated[str, Query(description="页码，从 0 开始")] = "0",
    limit: Annotated[int, Query(description="每页数量 (0-200)")] = 30,
    order: Annotated[str, Query(description="asc / desc")] = "asc",
    sort: Annotated[str | None, Query(description="排序字段")] = None,
    type: Annotated[ChartType | None, Query(description="存在该类型的谱面")] = None,
    min_difficulty: Annotated[int | None, Query()] = None,
    max_difficulty: Annotated[int | None, Query()] = None,
    date_start: Annotated[str | None, Query(description="创建时间下限")] = None,
    date_end: Annotated[str | None, Query(description="创建时间上限")] = None,
    featured: Annotated[str | None, Query(description="true / false")] = None,
    tags: Annotated[str | None, Query(description="以 | 分隔，全部匹配")] = None,
    search: Annotated[str | None, Query(description="搜索标题、简介和标签")] = None,
    owner: Annotated[str | None, Query(description="上传者 uuid 或 uid")] = None,
):
    """谱面列表

    只有上传者查询自己的谱面时会返回未发布和被审查的谱面。

    响应头:
    - X-Total-Entries: 总数
    - X-Total-Page: 总页数
    - X-Current-Page: 当前页
    """
    if not page.isdigit():
        raise HTTPException(400, "Page has to be a positive integer!")
    try:
        query = LevelSearchQuery(
            page=int(page),
            limit=clamp(limit, 0, settings.level_list_max_limit),
            order="desc" if order.lower() == "desc" else "asc",
            sort=sort if sort in LEVEL_SORTS else None,
            type=type,
            min_difficulty=min_difficulty,
            max_difficulty=max_difficulty,
            date_start=date_start or None,
            date_end=date_end or None,
            featured=None if featured is None else featured.lower() == "true",
            tags=tags.split("|") if tags else None,
            search=search or None,
            owner=owner or None,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))

    own = current_user is not None and query.is_owner(current_user.id, current_user.uid)
    response.headers["Cache-Control"] = "private" if own else "public, max-age=60"

    total, levels = await search_levels(session, query, own=own)
    response.headers["X-Total-Entries"] = str(total)
    if query.limit == 0:
        return None
    response.headers["X-Total-Page"] = str(math.ceil(total / query.limit))
    response.headers["X-Current-Page"] = str(query.page)
    return levels


@router.get("/{uid}", name="获取谱面", response_model=LevelDetailResp)
async def get_level(session: Database, uid: LevelUid, response: Response, current_user: OptionalUser):
    """获取谱面详情

    错误情况:
    - 404: 谱面不存在
    - 451: 谱面被审查 (`censored:<原因>`)
    - 403: 谱面未发布
    """
    level = await _get_level(session, uid)
    if _can_read_any(level, current_user):
        response.headers["Cache-Control"] = "private"
        return await _level_detail(session, level)

    response.headers["Cache-Control"] = "public, max-age=600"
    if level.censored is not None and level.censored != GLOBAL_VISIBLE_CENSORSHIP:
        raise HTTPException(451, f"censored:{level.censored}")
    if not level.published:
        raise HTTPException(403, "Access Denied")
    return await _level_detail(session, level)


@router.get("/{uid}/legacy", name="获取旧版谱面元数据")
async def get_level_meta_legacy(session: Database, uid: LevelUid) -> Any:
    """原始元数据，谱面难度替换为当前数据库中的难度"""
    level = await _get_level(session, uid)
    raw = copy.deepcopy((level.level_metadata or {}).get("raw"))
    if raw is None:
        return None
    difficulties = {
        chart_type: difficulty
        for chart_type, difficulty in (
            await session.exec(select(Chart.type, Chart.difficulty).where(col(Chart.level_id) == level.id))
        ).all()
    }
    for chart in raw.get("charts", []):
        chart["difficulty"] = difficulties.get(chart.get("type"))
    return raw


@router.patch("/{uid}", name="编辑谱面", status_code=204)
async def edit_level(
    session: Database,
    uid: LevelUid,
    body: LevelAdminUpdate,
    current_user: CurrentUser,
    background_task: BackgroundTasks,
):
    """编辑谱面

    上传者可以修改自己的谱面，管理员可以修改任意谱面以及 `featured`、`censored`。
    """
    level = await _get_level(session, uid)
    can_manage = current_user.role.can_manage_levels()
    if level.owner_id != current_user.id and not can_manage:
        raise HTTPException(403, "You don't have permission to edit this level")

    changes = body.model_dump(exclude_unset=True)
    if not can_manage:
        changes = {k: v for k, v in changes.items() if k not in ADMIN_FIELDS}
    tags = changes.pop("tags", None)
    was_published = level.published

    for key, value in changes.items():
        setattr(level, key, value)
    if tags is not None:
        await session.execute(delete(LevelTag).where(col(LevelTag.level_id) == level.id))
        session.add_all([LevelTag(level_id=level.id, name=tag) for tag in tags])
    session.add(level)
    await session.commit()
    await session.refresh(level)

    if not was_published and level.published:
        background_task.add_task(on_level_published, await _level_detail(session, level))
    return None


@router.delete("/{uid}", name="删除谱面", status_code=204)
async def delete_level(session: Database, uid: LevelUid, current_user: CurrentUser):
    level = (
        await session.exec(
            select(Level).where(col(Level.uid) == uid, col(Level.owner_id) == current_user.id)
        )
    ).first()
    if level is None:
        raise HTTPException(404, "Level not found")
    chart_ids = select(Chart.id).where(col(Chart.level_id) == level.id)
    await session.execute(delete(Record).where(col(Record.chart_id).in_(chart_ids)))
    await session.execute(delete(Chart).where(col(Chart.level_id) == level.id))
    await session.execute(delete(LevelRating).where(col(LevelRating.level_id) == level.id))
    await session.execute(delete(LevelDownload).where(col(LevelDownload.level_id) == level.id))
    await session.execute(delete(LevelTag).where(col(LevelTag.level_id) == level.id))
    await session.delete(level)
    await session.commit()
    logger.info(f"Level {uid} deleted by {current_user.id}")
    return None


async def _ratings(
    session: AsyncSession,
    redis: RedisClient,
    level: Level,
    user: SessionUser | None,
) -> RatingSummary:
    summary = await get_cached_ratings(redis, level.uid)
    if summary is None:
        summary = await get_rating_summary(session, level.id)  # pyright: ignore[reportArgumentType]
        await set_cached_ratings(redis, level.uid, summary)
    if user is not None:
        rating = await get_user_rating(session, level.id, user.id)  # pyright: ignore[reportArgumentType]
        if rating:
            summary.rating = rating
    return summary


@router.get(
    "/{uid}/ratings",
    name="获取谱面评分",
    response_model=RatingSummary,
    response_model_exclude_unset=True,
)
async def get_ratings(session: Database, redis: Redis, uid: LevelUid, current_user: OptionalUser):
    """评分均值、总数和分布；登录时额外返回自己的评分"""
    level = await _get_level(session, uid)
    return await _ratings(session, redis, level, current_user)


@router.post(
    "/{uid}/ratings",
    name="评分",
    response_model=RatingSummary,
    response_model_exclude_unset=True,
)
async def update_rating(
    session: Database,
    redis: Redis,
    uid: LevelUid,
    body: RatingUpdate,
    current_user: CurrentUser,
):
    """评分 1-10，传 0 或 null 删除自己的评分"""
    if not body.rating:
        level = await _get_level(session, uid)
        if await delete_rating(session, level.id, current_user.id) == 0:  # pyright: ignore[reportArgumentType]
            raise HTTPException(404, "The specified level does not exist!")
    else:
        if not body.is_valid():
            raise HTTPException(400, "Rating missing or out of range (0 - 10)")
        level = await _get_level(session, uid)
        await upsert_rating(session, level.id, current_user.id, int(body.rating))  # pyright: ignore[reportArgumentType]
    await session.commit()
    await invalidate_ratings(redis, uid)
    return await _ratings(session, redis, level, current_user)


@router.get("/{uid}/statistics/timeseries", name="谱面游玩统计", response_model=list[TimeseriesEntry])
async def get_statistics(session: Database, uid: LevelUid):
    """按 ISO 年、周统计成绩数"""
    level = await _get_level(session, uid)
    dates = (
        await session.exec(
            select(Record.date)
            .join(Chart, col(Chart.id) == col(Record.chart_id))
            .where(col(Chart.level_id) == level.id)
        )
    ).all()
    counter = Counter(tuple(d.isocalendar())[:2] for d in dates)
    return [TimeseriesEntry(year=year, week=week, count=count) for (year, week), count in sorted(counter.items())]


@router.get("/{uid}/charts/{type}", name="获取谱面难度信息", response_model=ChartInfo | None)
async def get_chart_info(session: Database, uid: LevelUid, type: ChartTypePath):
    chart = await get_chart(session, uid, type)
    if chart is None:
        return None
    return ChartInfo(name=chart.name, difficulty=chart.difficulty, level=uid, type=type.value)


@router.get("/{uid}/charts/{type}/checksum", name="获取谱面校验值", response_model=str | None)
async def get_chart_checksum(
    session: Database,
    uid: LevelUid,
    type: ChartTypePath,
    authorization: Annotated[str | None, Header()] = None,
):
    if not settings.checksum_token or authorization != settings.checksum_token:
        raise HTTPException(401, "Unauthorized")
    chart = await get_chart(session, uid, type)
    return chart.checksum if chart else None


@router.get("/{uid}/charts/{type}/ranking", name="谱面排行榜", response_model=list[LeaderboardEntry])
async def get_chart_ranking(
    session: Database,
    response: Response,
    uid: LevelUid,
    type: ChartTypePath,
    limit: Annotated[int, Query(description="每页数量 (1-30)")] = 10,
    page: Annotated[int, Query(ge=0, description="页码")] = 0,
    user: Annotated[str | None, Query(description="以该玩家为中心 (uuid 或 uid)")] = None,
    user_limit: Annotated[int, Query(alias="userLimit", description="玩家上下的排名范围 (0-10)")] = 3,
):
    """每个玩家只取最好的 ranked 成绩

    指定 user 时返回该玩家排名上下 userLimit 名以内的成绩，不分页。
    """
    chart = await get_chart(session, uid, type)
    if chart is None:
        raise HTTPException(404, "Chart not found")
    if user:
        window = clamp(user_limit, 0, settings.ranking_max_user_window)
        return await get_leaderboard_around_user(session, chart.id, user, window)  # pyright: ignore[reportArgumentType]

    limit = clamp(limit, 1, settings.ranking_max_limit)
    total = await count_ranked_players(session, chart.id)  # pyright: ignore[reportArgumentType]
    response.headers["X-Total-Entries"] = str(total)
    response.headers["X-Total-Page"] = str(math.ceil(total / limit))
    response.headers["X-Current-Page"] = str(page)
    return await get_leaderboard(session, chart.id, limit, page)  # pyright: ignore[reportArgumentType]


@router.post("/{uid}/charts/{type}/records", name="提交成绩", response_model=NewRecordResp)
async def add_record(
    session: Database,
    uid: LevelUid,
    type: ChartTypePath,
    body: NewRecord,
    current_user: CurrentUser,
):
    chart = await get_chart(session, uid, type)
    if chart is None:
        raise HTTPException(404, "The specified chart was not found.")
    record = Record(
        owner_id=current_user.id,
        chart_id=chart.id,  # pyright: ignore[reportArgumentType]
        score=body.score,
        accuracy=body.accuracy,
        details=body.details.model_dump(),
        mods=body.mods,
        ranked=body.ranked,
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return NewRecordResp(id=record.id, chart_id=record.chart_id)  # pyright: ignore[reportArgumentType]


async def _package_url(session: AsyncSession, uid: str, user: SessionUser) -> str:
    level = await _get_level(session, uid)
    if not level.package_path:
        raise HTTPException(404, "Package not found")
    await process_level_download(session, level.id, user.id)  # pyright: ignore[reportArgumentType]
    await session.commit()
    return sign_url(settings.assets_base, level.package_path, settings.asset_url_expire_seconds)


@router.get("/{uid}/resources", name="获取谱面下载地址", response_model=PackageResp)
async def get_resources_url(session: Database, uid: LevelUid, current_user: CurrentUser):
    """记录下载次数并返回带签名的下载地址"""
    return PackageResp(package=await _package_url(session, uid, current_user))


@router.get("/{uid}/package", name="下载谱面")
async def download_package(session: Database, uid: LevelUid, current_user: CurrentUser):
    return RedirectResponse(await _package_url(session, uid, current_user), status_code=302)
