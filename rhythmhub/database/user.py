from datetime import datetime
import hashlib
from urllib.parse import urlencode
import uuid

from rhythmhub.config import settings
from rhythmhub.const import Role
from rhythmhub.models.model import UTCBaseModel
from rhythmhub.utils import is_uuid, utcnow

from sqlalchemy import Boolean, Column, DateTime, String, UniqueConstraint
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Field, ForeignKey, SQLModel, col


class UserBase(SQLModel, UTCBaseModel):
    uid: str | None = Field(default=None, sa_column=Column(String(64), unique=True, nullable=True))
    name: str | None = Field(default=None, max_length=128)
    avatar_path: str | None = Field(default=None, max_length=255)
    role: Role = Field(default=Role.USER)
    registration_date: datetime = Field(
        default_factory=utcnow, sa_column=Column("date_registration", DateTime, nullable=False)
    )


class User(UserBase, table=True):
    __tablename__: str = "users"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), sa_column=Column(String(36), primary_key=True))
    email: str | None = Field(default=None, sa_column=Column(String(255), unique=True, nullable=True))
    password: str = Field(exclude=True)

    @staticmethod
    def lookup(identifier: str) -> ColumnElement[bool]:
        """按 uuid 或 uid 查找用户"""
        if is_uuid(identifier):
            return col(User.id) == identifier.lower()
        return col(User.uid) == identifier.lower()

    def avatar_url(self, size: int = 512) -> str:
        if self.avatar_path:
            return f"{settings.assets_base}/{self.avatar_path.lstrip('/')}?{urlencode({'size': size})}"
        digest = hashlib.md5((self.email or self.id).strip().lower().encode()).hexdigest()
        return f"{settings.gravatar_url}{digest}?{urlencode({'s': size, 'd': 'identicon'})}"


class UserResp(UserBase):
    id: str
    email: str | None = None
    avatar_url: str

    @classmethod
    def from_db(cls, user: User, with_email: bool = False) -> "UserResp":
        return cls(
            id=user.id,
            uid=user.uid,
            name=user.name,
            avatar_path=user.avatar_path,
            avatar_url=user.avatar_url(),
            role=user.role,
            registration_date=user.registration_date,
            email=user.email if with_email else None,
        )


class UserSummary(SQLModel):
    id: str
    uid: str | None = None
    name: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_db(cls, user: User) -> "UserSummary":
        return cls(id=user.id, uid=user.uid, name=user.name, avatar_url=user.avatar_url())


class Email(SQLModel, table=True):
    __tablename__: str = "emails"

    address: str = Field(sa_column=Column(String(255), primary_key=True))
    verified: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    owner_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))


class EmailResp(SQLModel):
    address: str
    verified: bool
    primary: bool


class ExternalAccount(SQLModel, table=True):
    __tablename__: str = "external_accounts"
    __table_args__ = (UniqueConstraint("provider", "owner_id", name="external_accounts_provider_owner_key"),)

    id: int | None = Field(default=None, primary_key=True)
    provider: str = Field(max_length=32)
    uid: str = Field(max_length=255)
    token: str | None = Field(default=None)
    owner_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True))
