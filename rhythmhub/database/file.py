from datetime import datetime
from typing import Any

from rhythmhub.models.model import UTCBaseModel
from rhythmhub.utils import utcnow

from sqlalchemy import JSON, BigInteger, Column, DateTime, String
from sqlmodel import Field, ForeignKey, SQLModel


class FileBase(SQLModel, UTCBaseModel):
    path: str = Field(sa_column=Column(String(255), primary_key=True))
    type: str = Field(max_length=32)
    content: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    size: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))


class File(FileBase, table=True):
    __tablename__: str = "files"

    owner_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    )
    created_date: datetime = Field(default_factory=utcnow, sa_column=Column("date_created", DateTime))


class FileResp(FileBase):
    pass
