from rhythmhub.config import settings
from rhythmhub.log import log

from fastapi import Header, HTTPException
import httpx

logger = log("Captcha")


async def verify_captcha(
    captcha: str | None = Header(default=None, alias="X-Captcha-Token", description="人机验证 token"),
) -> None:
    """注册前的人机验证；未配置 captcha_secret 时跳过"""
    if not settings.captcha_enabled:
        return
    if not captcha:
        raise HTTPException(400, "Captcha required")
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                settings.captcha_verify_url,
                data={"secret": settings.captcha_secret, "response": captcha},
            )
            response.raise_for_status()
            result = response.json()
    except httpx.HTTPError as e:
        logger.error(f"Captcha verification request failed: {e}")
        raise HTTPException(503, "Captcha service unavailable")
    if not result.get("success"):
        logger.debug(f"Captcha rejected: {result.get('error-codes')}")
        raise HTTPException(400, "Captcha verification failed")
