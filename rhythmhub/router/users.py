from typing import Annotated

from rhythmhub.auth import hash_password, update_session
from rhythmhub.config import settings
from rhythmhub.database import Email, EmailResp, ExternalAccount, Profile, User, UserResp
from rhythmhub.dependencies.captcha import verify_captcha
from rhythmhub.dependencies.database import Database, Redis
from rhythmhub.dependencies.user import CurrentUser, session_cookie
from rhythmhub.log import log
from rhythmhub.models.user import (
    EmailPrimaryRequest,
    ExternalNewUser,
    NewEmailRequest,
    NewUser,
    ProviderLinkRequest,
    RenameRequest,
    SessionUser,
    TokenResp,
)
from rhythmhub.service.events import on_user_new
from rhythmhub.service.external_session import get_external_provider_session
from rhythmhub.service.mail import mail_client
from rhythmhub.service.verification_code import email_verification

from .session import log_in

from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Query, Response, Security
from fastapi.responses import PlainTextResponse, RedirectResponse
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, exists, select
from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/users", tags=["用户"])
logger = log("User")

UserIdentifier = Annotated[str, Path(description="用户 uuid 或 uid")]


def _ensure_self(current_user: SessionUser, id: str, status_code: int = 401) -> None:
    if not current_user.is_self(id):
        raise HTTPException(status_code, "You can only manage your own account")


async def _get_user(session: AsyncSession, id: str) -> User:
    user = (await session.exec(select(User).where(User.lookup(id)))).first()
    if user is None:
        raise HTTPException(404, "User not found")
    return user


async def _check_signup_conflicts(session: AsyncSession, body: NewUser) -> None:
    if body.email and (await session.exec(select(exists().where(col(Email.address) == body.email)))).first():
        raise HTTPException(403, "The email address already exist")
    if body.uid and (await session.exec(select(exists().where(col(User.uid) == body.uid)))).first():
        raise HTTPException(403, "The UID already exist")


async def _create_user(session: AsyncSession, body: NewUser) -> User:
    """在一个事务中创建用户、主邮箱和个人资料"""
    await _check_signup_conflicts(session, body)
    user = User(name=body.name, uid=body.uid, email=body.email, password=hash_password(body.password))
    session.add(user)
    try:
        await session.flush()
        if body.email:
            session.add(Email(address=body.email, owner_id=user.id))
        session.add(Profile(id=user.id))
        await session.commit()
    except IntegrityError:
        # 并发注册
        await session.rollback()
        await _check_signup_conflicts(session, body)
        raise
    await session.refresh(user)
    return user


async def _link_external_account(
    session: AsyncSession, provider: str, owner_id: str, uid: str, token: str | None
) -> None:
    account = (
        await session.exec(
            select(ExternalAccount).where(
                col(ExternalAccount.provider) == provider,
                col(ExternalAccount.owner_id) == owner_id,
            )
        )
    ).first()
    if account is None:
        session.add(ExternalAccount(provider=provider, uid=uid, token=token, owner_id=owner_id))
    else:
        account.uid = uid
        account.token = token
    await session.commit()


async def _list_emails(session: AsyncSession, user_id: str) -> list[EmailResp]:
    primary = (await session.exec(select(User.email).where(col(User.id) == user_id))).first()
    emails = (
        await session.exec(select(Email).where(col(Email.owner_id) == user_id).order_by(col(Email.address)))
    ).all()
    return [EmailResp(address=e.address, verified=e.verified, primary=e.address == primary) for e in emails]


@router.get("", name="获取当前用户", response_model=UserResp)
async def get_current_user_info(session: Database, current_user: CurrentUser):
    user = await _get_user(session, current_user.id)
    return UserResp.from_db(user, with_email=True)


@router.post(
    "",
    name="注册",
    response_model=TokenResp,
    dependencies=[Depends(verify_captcha)],
)
async def create_user(
    session: Database,
    redis: Redis,
    body: NewUser,
    response: Response,
    background_task: BackgroundTasks,
):
    """注册新用户并登录

    错误情况:
    - 403: 邮箱或 UID 已存在
    """
    user = await _create_user(session, body)
    background_task.add_task(on_user_new, UserResp.from_db(user), user.email)
    return await log_in(response, redis, SessionUser.from_db(user))


@router.put("", name="通过第三方账号注册", response_model=TokenResp)
async def create_user_with_external_session(
    session: Database,
    redis: Redis,
    body: ExternalNewUser,
    response: Response,
    background_task: BackgroundTasks,
):
    external = await get_external_provider_session(redis, body.provider, body.token)
    if external is None:
        raise HTTPException(404, "session does not exist")
    new_user = NewUser(
        name=body.name,
        uid=body.uid,
        password=body.password,
        email=external.email or body.email,
    )
    user = await _create_user(session, new_user)
    await _link_external_account(session, body.provider, user.id, external.id, external.token)
    background_task.add_task(on_user_new, UserResp.from_db(user), user.email)
    return await log_in(response, redis, SessionUser.from_db(user))


@router.get("/{id}", name="获取用户", response_model=UserResp)
async def get_user(session: Database, id: UserIdentifier):
    return UserResp.from_db(await _get_user(session, id))


@router.put("/{id}", name="修改用户名", status_code=202)
async def rename_user(
    session: Database,
    redis: Redis,
    id: UserIdentifier,
    body: RenameRequest,
    current_user: CurrentUser,
    session_id: Annotated[str | None, Security(session_cookie)] = None,
):
    _ensure_self(current_user, id)
    await session.execute(update(User).where(col(User.id) == current_user.id).values(name=body.name))
    await session.commit()
    if session_id:
        await update_session(redis, session_id, current_user.model_copy(update={"name": body.name}))
    return None


@router.get("/{id}/avatar", name="获取头像")
async def get_avatar(
    session: Database,
    id: UserIdentifier,
    size: Annotated[int, Query(ge=1, le=2048, description="头像尺寸")] = 512,
):
    user = await _get_user(session, id)
    return RedirectResponse(user.avatar_url(size), status_code=302)


@router.delete("/{id}/avatar", name="删除头像", status_code=204)
async def delete_avatar(session: Database, id: UserIdentifier, current_user: CurrentUser):
    _ensure_self(current_user, id)
    await session.execute(update(User).where(col(User.id) == current_user.id).values(avatar_path=None))
    await session.commit()
    return None


@router.get("/{id}/emails", name="获取邮箱列表", response_model=list[EmailResp])
async def get_emails(session: Database, id: UserIdentifier, current_user: CurrentUser):
    _ensure_self(current_user, id)
    return await _list_emails(session, current_user.id)


@router.post("/{id}/emails", name="添加邮箱", status_code=201, response_model=list[EmailResp])
async def add_email(session: Database, id: UserIdentifier, body: NewEmailRequest, current_user: CurrentUser):
    address = body.email.strip().lower()
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        raise HTTPException(400, "email not valid")
    _ensure_self(current_user, id)
    if (await session.exec(select(exists().where(col(Email.address) == address)))).first():
        raise HTTPException(400, "duplicated email address")
    session.add(Email(address=address, verified=False, owner_id=current_user.id))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(400, "duplicated email address")
    return await _list_emails(session, current_user.id)


@router.patch("/{id}/emails/{email}", name="设置主邮箱", status_code=204)
async def set_primary_email(
    session: Database,
    id: UserIdentifier,
    email: str,
    body: EmailPrimaryRequest,
    current_user: CurrentUser,
):
    _ensure_self(current_user, id)
    user = await _get_user(session, current_user.id)
    if body.primary:
        address = email.lower()
        owned = (
            await session.exec(
                select(exists().where(col(Email.address) == address, col(Email.owner_id) == current_user.id))
            )
        ).first()
        if not owned:
            raise HTTPException(404, "email not found")
        user.email = address
    else:
        user.email = None
    await session.commit()
    return None


@router.delete("/{id}/emails/{email}", name="删除邮箱", status_code=204)
async def delete_email(session: Database, id: UserIdentifier, email: str, current_user: CurrentUser):
    _ensure_self(current_user, id)
    address = email.lower()
    result = await session.execute(
        delete(Email).where(col(Email.address) == address, col(Email.owner_id) == current_user.id)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise HTTPException(404, "email not found")
    await session.execute(
        update(User).where(col(User.id) == current_user.id, col(User.email) == address).values(email=None)
    )
    await session.commit()
    return None


@router.post("/{id}/emails/{email}/verify", name="发送邮箱验证", status_code=202)
async def send_email_verification(
    session: Database,
    redis: Redis,
    id: UserIdentifier,
    email: str,
    current_user: CurrentUser,
):
    _ensure_self(current_user, id)
    address = email.lower()
    record = (
        await session.exec(
            select(Email).where(col(Email.address) == address, col(Email.owner_id) == current_user.id)
        )
    ).first()
    if record is None:
        raise HTTPException(404, "email not found")
    if record.verified:
        raise HTTPException(403, "already verified")
    token = await email_verification.generate(redis, address)
    await mail_client.send_with_remote_template(
        "email-confirm",
        {"name": current_user.name or current_user.uid or "", "email": address},
        {"url": f"{settings.api_base}/users/{current_user.id}/emails/{address}/verify/{token}"},
    )
    return None


@router.get("/{id}/emails/{email}/verify/{token}", name="确认邮箱", response_class=PlainTextResponse)
async def confirm_email(session: Database, redis: Redis, id: str, email: str, token: str):
    address = email.lower()
    if await email_verification.consume(redis, token) != address:
        return "The token was expired."
    await session.execute(
        update(Email)
        .where(col(Email.address) == address, col(Email.owner_id) == id, col(Email.verified).is_(False))
        .values(verified=True)
    )
    await session.commit()
    logger.info(f"Email {address} of {id} verified")
    return "Your email was successfully confirmed!"


@router.get("/{id}/providers", name="获取已绑定的第三方账号", response_model=list[str])
async def get_providers(session: Database, id: UserIdentifier, current_user: CurrentUser):
    _ensure_self(current_user, id, 403)
    return (
        await session.exec(
            select(ExternalAccount.provider)
            .where(col(ExternalAccount.owner_id) == current_user.id)
            .order_by(col(ExternalAccount.provider))
        )
    ).all()


@router.post("/{id}/providers/{provider}", name="绑定第三方账号", status_code=204)
async def add_provider(
    session: Database,
    redis: Redis,
    id: UserIdentifier,
    provider: str,
    body: ProviderLinkRequest,
    current_user: CurrentUser,
):
    _ensure_self(current_user, id, 403)
    external = await get_external_provider_session(redis, provider, body.token)
    if external is None:
        raise HTTPException(404, "session does not exist")
    await _link_external_account(session, provider, current_user.id, external.id, external.token)
    return None


@router.delete("/{id}/providers/{provider}", name="解绑第三方账号", status_code=204)
async def remove_provider(session: Database, id: UserIdentifier, provider: str, current_user: CurrentUser):
    _ensure_self(current_user, id, 403)
    await session.execute(
        delete(ExternalAccount).where(
            col(ExternalAccount.provider) == provider,
            col(ExternalAccount.owner_id) == current_user.id,
        )
    )
    await session.commit()
    return None
