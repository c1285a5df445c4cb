from typing import TYPE_CHECKING

from rhythmhub.const import Role

from pydantic import BaseModel, EmailStr, Field, field_validator

if TYPE_CHECKING:
    from rhythmhub.database.user import User


class SessionUser(BaseModel):
    """保存在 session 和 JWT `sub` 中的用户信息"""

    id: str
    uid: str | None = None
    name: str | None = None
    email: str | None = None
    role: Role = Role.USER

    @classmethod
    def from_db(cls, user: "User") -> "SessionUser":
        return cls(id=user.id, uid=user.uid, name=user.name, email=user.email, role=user.role)

    def is_self(self, identifier: str) -> bool:
        """id 可以是 uuid 或 uid"""
        identifier = identifier.lower()
        return identifier == self.id.lower() or (self.uid is not None and identifier == self.uid.lower())


class NewUser(BaseModel):
    name: str | None = Field(default=None, max_length=128)
    uid: str | None = Field(default=None, min_length=1, max_length=64, pattern=r"^[\w-]+$")
    password: str = Field(min_length=8)
    email: EmailStr | None = None

    @field_validator("uid", "email")
    @classmethod
    def lower(cls, v: str | None) -> str | None:
        return v.lower() if v is not None else None


class ExternalNewUser(NewUser):
    token: str
    provider: str


class LoginRequest(BaseModel):
    username: str = Field(description="UID 或邮箱")
    password: str


class TokenResp(BaseModel):
    user: SessionUser
    token: str


class RenameRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class NewEmailRequest(BaseModel):
    email: str


class EmailPrimaryRequest(BaseModel):
    primary: bool


class ProviderLinkRequest(BaseModel):
    token: str


class ExternalProviderSession(BaseModel):
    """第三方登录流程写入 redis 的会话"""

    id: str
    token: str | None = None
    email: str | None = None
