from datetime import datetime
from typing import Any, Self

from rhythmhub.const import GLOBAL_VISIBLE_CENSORSHIP
from rhythmhub.models.model import UTCBaseModel
from rhythmhub.utils import utcnow

from .chart import ChartResp
from .file import FileResp
from .user import UserSummary

from sqlalchemy import JSON, Column, DateTime, String, Text, or_
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Field, ForeignKey, SQLModel, col


class LevelBase(SQLModel, UTCBaseModel):
    uid: str = Field(sa_column=Column(String(64), unique=True, nullable=False, index=True))
    title: str = Field(default="", max_length=255)
    version: int = Field(default=1)
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    duration: float = Field(default=0.0)
    featured: bool = Field(default=False)
    censored: str | None = Field(default=None, max_length=32)
    published: bool = Field(default=False)
    creation_date: datetime = Field(
        default_factory=utcnow, sa_column=Column("date_created", DateTime, nullable=False, index=True)
    )
    modification_date: datetime = Field(
        default_factory=utcnow, sa_column=Column("date_modified", DateTime, nullable=False, onupdate=utcnow)
    )


class Level(LevelBase, table=True):
    __tablename__: str = "levels"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))
    # `metadata` 是 SQLAlchemy 的保留属性名
    level_metadata: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))
    bundle_path: str | None = Field(
        default=None, sa_column=Column(String(255), ForeignKey("files.path", ondelete="SET NULL"), nullable=True)
    )
    package_path: str | None = Field(
        default=None, sa_column=Column(String(255), ForeignKey("files.path", ondelete="SET NULL"), nullable=True)
    )

    @staticmethod
    def publicly_visible() -> list[ColumnElement[bool]]:
        return [
            col(Level.published).is_(True),
            or_(col(Level.censored).is_(None), col(Level.censored) == GLOBAL_VISIBLE_CENSORSHIP),
        ]

    def public_metadata(self) -> dict[str, Any]:
        return {k: v for k, v in (self.level_metadata or {}).items() if k != "raw"}


class LevelTag(SQLModel, table=True):
    __tablename__: str = "level_tags"

    level_id: int = Field(
        sa_column=Column(ForeignKey("levels.id", ondelete="CASCADE"), primary_key=True),
    )
    name: str = Field(sa_column=Column(String(64), primary_key=True, index=True))


class LevelResp(UTCBaseModel):
    id: int
    uid: str
    title: str
    version: int
    description: str | None = None
    duration: float
    featured: bool
    censored: str | None = None
    published: bool
    creation_date: datetime
    modification_date: datetime
    owner: UserSummary | None = None
    metadata: dict[str, Any] = {}
    tags: list[str] = []
    charts: list[ChartResp] = []
    bundle: FileResp | None = None

    @classmethod
    def from_db(cls, level: Level, **kwargs: Any) -> Self:
        return cls(
            id=level.id,
            uid=level.uid,
            title=level.title,
            version=level.version,
            description=level.description,
            duration=level.duration,
            featured=level.featured,
            censored=level.censored,
            published=level.published,
            creation_date=level.creation_date,
            modification_date=level.modification_date,
            metadata=level.public_metadata(),
            **kwargs,
        )


class LevelDetailResp(LevelResp):
    package_size: int | None = None


class LevelListItem(LevelResp):
    rating: float | None = None
    plays: int = 0
    downloads: int = 0
