from rhythmhub.config import settings
from rhythmhub.database.level import LevelResp
from rhythmhub.database.user import UserResp
from rhythmhub.log import log
from rhythmhub.service.mail import mail_client

import httpx

logger = log("Event")


async def on_level_published(level: LevelResp) -> None:
    logger.opt(colors=True).info(f"Level <cyan>{level.uid}</cyan> published")
    if not settings.level_published_webhook_url:
        return
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                settings.level_published_webhook_url,
                json={"event": "level_published", "level": level.model_dump(mode="json")},
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Failed to deliver level_published webhook for {level.uid}: {e}")


async def on_user_new(user: UserResp, email: str | None) -> None:
    logger.opt(colors=True).info(f"New user <cyan>{user.uid or user.id}</cyan>")
    if email:
        await mail_client.send_with_remote_template(
            "welcome",
            {"name": user.name or user.uid or "", "email": email},
            {"url": settings.api_base},
        )
