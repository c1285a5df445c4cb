from typing import Any

from rhythmhub.config import settings
from rhythmhub.log import log

import httpx

logger = log("Mail")


class MailClient:
    """事务邮件服务，使用远端模板"""

    def __init__(self, timeout: float = 10):
        self.timeout = timeout

    async def send_with_remote_template(
        self,
        template: str,
        to: dict[str, str],
        data: dict[str, Any],
    ) -> bool:
        if not settings.mail_enabled:
            logger.debug(f"Mail disabled, skip template {template} to {to.get('email')}")
            return False
        payload = {
            "template": template,
            "from": settings.mail_sender,
            "to": to,
            "data": data,
        }
        headers = {"Authorization": f"Bearer {settings.mail_api_key}"} if settings.mail_api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(settings.mail_api_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send {template} mail to {to.get('email')}: {e}")
            return False
        logger.info(f"Sent {template} mail to {to.get('email')}")
        return True


mail_client = MailClient()
