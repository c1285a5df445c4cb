from datetime import date

from sqlalchemy import Column, Date, String, Text
from sqlmodel import Field, ForeignKey, SQLModel


class ProfileBase(SQLModel):
    bio: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    birthday: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    header_path: str | None = Field(default=None, max_length=255)


class Profile(ProfileBase, table=True):
    __tablename__: str = "profiles"

    id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True))


class ProfileResp(ProfileBase):
    pass
