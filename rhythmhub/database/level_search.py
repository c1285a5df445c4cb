from collections import defaultdict
from typing import Any

from rhythmhub.const import RATING_PRIOR_MEAN, RATING_PRIOR_VOTES
from rhythmhub.models.level import LevelSearchQuery

from .chart import Chart, ChartResp
from .file import File, FileResp
from .level import Level, LevelListItem, LevelTag
from .level_download import LevelDownload
from .level_rating import LevelRating
from .record import Record
from .user import User, UserSummary

from sqlalchemy import and_, exists, literal, or_
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession


def _rating_average() -> Any:
    return (
        select(func.avg(col(LevelRating.rating)))
        .where(col(LevelRating.level_id) == col(Level.id))
        .correlate(Level)
        .scalar_subquery()
    )


def _rating_weighted() -> Any:
    # (60 + avg * count) * 1.0 / (10 + count)，无评分时 avg 为 NULL，整体为 NULL
    rating = col(LevelRating.rating)
    return (
        select(
            (literal(RATING_PRIOR_MEAN * RATING_PRIOR_VOTES) + func.avg(rating) * func.count(rating))
            * 1.0
            / (literal(RATING_PRIOR_VOTES) + func.count(rating))
        )
        .where(col(LevelRating.level_id) == col(Level.id))
        .correlate(Level)
        .scalar_subquery()
    )


def _downloads() -> Any:
    return (
        select(func.count())
        .select_from(LevelDownload)
        .where(col(LevelDownload.level_id) == col(Level.id))
        .correlate(Level)
        .scalar_subquery()
    )


def _plays() -> Any:
    return (
        select(func.count(col(Record.id)))
        .join(Chart, col(Chart.id) == col(Record.chart_id))
        .where(col(Chart.level_id) == col(Level.id))
        .correlate(Level)
        .scalar_subquery()
    )


def _chart_difficulty(agg: Any) -> Any:
    return (
        select(agg(col(Chart.difficulty)))
        .where(col(Chart.level_id) == col(Level.id))
        .correlate(Level)
        .scalar_subquery()
    )


def _filters(query: LevelSearchQuery, own: bool) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []

    # 存在一个满足类型和难度条件的谱面
    chart_conditions: list[ColumnElement[bool]] = []
    if query.type is not None:
        chart_conditions.append(col(Chart.type) == query.type.value)
    if query.max_difficulty is not None:
        chart_conditions.append(col(Chart.difficulty) <= query.max_difficulty)
    if query.min_difficulty is not None:
        chart_conditions.append(col(Chart.difficulty) >= query.min_difficulty)
    if chart_conditions:
        conditions.append(
            exists(select(col(Chart.id)).where(col(Chart.level_id) == col(Level.id), *chart_conditions))
        )

    if query.date_start is not None:
        conditions.append(col(Level.creation_date) >= query.date_start)
    if query.date_end is not None:
        conditions.append(col(Level.creation_date) <= query.date_end)
    if query.featured is not None:
        conditions.append(col(Level.featured).is_(query.featured))

    for tag in query.tags or []:
        conditions.append(
            exists(select(col(LevelTag.name)).where(col(LevelTag.level_id) == col(Level.id), col(LevelTag.name) == tag))
        )

    if query.search:
        pattern = f"%{query.search.strip()}%"
        conditions.append(
            or_(
                col(Level.title).ilike(pattern),
                col(Level.description).ilike(pattern),
                exists(
                    select(col(LevelTag.name)).where(
                        col(LevelTag.level_id) == col(Level.id), col(LevelTag.name).ilike(pattern)
                    )
                ),
            )
        )

    if query.owner:
        conditions.append(User.lookup(query.owner))

    if not own:
        conditions.extend(Level.publicly_visible())
    return conditions


def _order_by(query: LevelSearchQuery) -> list[Any]:
    descending = query.order == "desc"
    keymap: dict[str, Any] = {
        "creation_date": col(Level.creation_date),
        "modification_date": col(Level.modification_date),
        "duration": col(Level.duration),
        "downloads": _downloads(),
        "plays": _plays(),
        "rating": _rating_weighted(),
        # 升序按最高难度，降序按最低难度
        "difficulty": _chart_difficulty(func.min if descending else func.max),
    }
    if query.sort is not None:
        key = keymap[query.sort]
        order = [(key.desc() if descending else key.asc()).nulls_last()]
        if query.sort != "creation_date":
            order.append(col(Level.creation_date).desc())
    elif not query.search:
        order = [col(Level.creation_date).desc() if descending else col(Level.creation_date).asc()]
    else:
        order = []
    order.append(col(Level.id).asc())
    return order


async def search_levels(
    session: AsyncSession,
    query: LevelSearchQuery,
    own: bool = False,
) -> tuple[int, list[LevelListItem]]:
    """谱面列表

    own: 上传者查询自己的谱面，不过滤未发布/被审查的谱面

    返回 (总数, 当前页)；limit 为 0 时只统计总数
    """
    conditions = _filters(query, own)

    count_stmt = select(func.count(col(Level.id))).select_from(Level)
    if query.owner:
        count_stmt = count_stmt.join(User, col(User.id) == col(Level.owner_id))
    total = (await session.exec(count_stmt.where(*conditions))).one()
    if query.limit == 0:
        return total, []

    stmt = (
        select(
            Level,
            User,
            File,
            _rating_average().label("rating"),
            _plays().label("plays"),
            _downloads().label("downloads"),
        )
        .join(User, col(User.id) == col(Level.owner_id))
        .outerjoin(File, and_(col(File.path) == col(Level.bundle_path), col(File.type) == "bundle"))
        .where(*conditions)
        .order_by(*_order_by(query))
        .limit(query.limit)
        .offset(query.limit * query.page)
    )
    rows = (await session.exec(stmt)).all()
    if not rows:
        return total, []

    level_ids = [level.id for level, *_ in rows]
    charts: dict[int, list[ChartResp]] = defaultdict(list)
    for chart in (
        await session.exec(
            select(Chart)
            .where(col(Chart.level_id).in_(level_ids))
            .order_by(col(Chart.difficulty), col(Chart.id))
        )
    ).all():
        charts[chart.level_id].append(ChartResp.model_validate(chart, from_attributes=True))
    tags: dict[int, list[str]] = defaultdict(list)
    for level_id, name in (
        await session.exec(
            select(col(LevelTag.level_id), col(LevelTag.name))
            .where(col(LevelTag.level_id).in_(level_ids))
            .order_by(col(LevelTag.name))
        )
    ).all():
        tags[level_id].append(name)

    items = []
    for level, owner, bundle, rating, plays, downloads in rows:
        items.append(
            LevelListItem.from_db(
                level,
                charts=charts[level.id],
                tags=tags[level.id],
                bundle=FileResp.model_validate(bundle, from_attributes=True) if bundle else None,
                # 按上传者筛选时不重复返回上传者信息
                owner=None if query.owner else UserSummary.from_db(owner),
                rating=float(rating) if rating is not None else None,
                plays=plays or 0,
                downloads=downloads or 0,
            )
        )
    return total, items
