from datetime import UTC, datetime
import hashlib
import hmac
import re
import time
from urllib.parse import quote, urlencode

from rhythmhub.config import settings

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def is_uuid(value: str) -> bool:
    """判断 id 是 uuid 还是用户自定义的 uid（大小写不敏感）"""
    return bool(UUID_PATTERN.match(value))


def _signature(path: str, expires: int) -> str:
    return hmac.new(
        settings.secret_key.encode(),
        f"{path}:{expires}".encode(),
        hashlib.sha256,
    ).hexdigest()


def sign_url(base: str, path: str, expire_seconds: int, now: float | None = None) -> str:
    """生成带过期时间的资源下载链接

    `{base}/{path}?expires=<unix>&signature=<hmac-sha256(path:expires)>`
    """
    path = path.lstrip("/")
    expires = int((now if now is not None else time.time()) + expire_seconds)
    query = urlencode({"expires": expires, "signature": _signature(path, expires)})
    return f"{base.rstrip('/')}/{quote(path)}?{query}"

