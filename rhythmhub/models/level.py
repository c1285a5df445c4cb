from datetime import UTC, datetime
from typing import Literal, get_args

from rhythmhub.const import MAX_SCORE, RATING_MAX, ChartType
from rhythmhub.database.record import RecordDetails

from pydantic import BaseModel, Field, field_validator

LevelSort = Literal[
    "creation_date",
    "modification_date",
    "duration",
    "downloads",
    "plays",
    "rating",
    "difficulty",
]
LEVEL_SORTS: tuple[str, ...] = get_args(LevelSort)


class LevelSearchQuery(BaseModel):
    page: int = 0
    limit: int = 30
    order: Literal["asc", "desc"] = "asc"
    sort: LevelSort | None = None
    type: ChartType | None = None
    min_difficulty: int | None = None
    max_difficulty: int | None = None
    date_start: datetime | None = None
    date_end: datetime | None = None
    featured: bool | None = None
    # None: 不过滤；[]: 传了 tags 但为空
    tags: list[str] | None = None
    search: str | None = None
    owner: str | None = None

    @field_validator("date_start", "date_end")
    @classmethod
    def naive_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is not None:
            return v.astimezone(UTC).replace(tzinfo=None)
        return v

    @field_validator("tags")
    @classmethod
    def lower_tags(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        return [tag.strip().lower() for tag in v if tag.strip()]

    def is_owner(self, user_id: str | None, user_uid: str | None) -> bool:
        """是否为上传者查询自己的谱面"""
        if not self.owner:
            return False
        owner = self.owner.lower()
        return owner == (user_id or "").lower() or owner == (user_uid or "").lower()


class LevelUpdate(BaseModel):
    """上传者可以修改的字段"""

    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    tags: list[str] | None = None
    published: bool | None = None

    @field_validator("title", "published")
    @classmethod
    def not_null(cls, v):
        # 只有显式传 null 时才会执行；对应的列不可为空
        if v is None:
            raise ValueError("may not be null")
        return v

    @field_validator("tags")
    @classmethod
    def lower_tags(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        # 去重并保持顺序
        return list(dict.fromkeys(tag.strip().lower() for tag in v if tag.strip()))


class LevelAdminUpdate(LevelUpdate):
    """管理员额外可以修改的字段"""

    featured: bool | None = None
    censored: str | None = Field(default=None, max_length=32)

    @field_validator("featured")
    @classmethod
    def featured_not_null(cls, v: bool | None) -> bool:
        if v is None:
            raise ValueError("may not be null")
        return v


class NewRecord(BaseModel):
    score: int = Field(ge=0, le=MAX_SCORE)
    accuracy: float = Field(ge=0, le=1)
    details: RecordDetails
    mods: list[str] = Field(default_factory=list)
    ranked: bool = False

    @field_validator("mods")
    @classmethod
    def unique_mods(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("mods must be unique")
        return v


class RatingUpdate(BaseModel):
    # 0 / null 表示删除自己的评分
    rating: float | None = None

    def is_valid(self) -> bool:
        return self.rating is not None and self.rating.is_integer() and 0 < self.rating <= RATING_MAX


class PackageResp(BaseModel):
    package: str


class TimeseriesEntry(BaseModel):
    year: int
    week: int
    count: int
