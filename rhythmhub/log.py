import inspect
import logging
import sys
import time

from rhythmhub.config import settings

from loguru import logger as _logger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


class InterceptHandler(logging.Handler):
    """把标准库 logging 的输出转发到 loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _format(record) -> str:
    name = record["extra"].get("name")
    prefix = f"<cyan>[{name}]</cyan> " if name else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> [<level>{level}</level>] "
        + prefix.replace("{", "{{").replace("}", "}}")
        + "<level>{message}</level>\n{exception}"
    )


_logger.remove()
_logger.add(
    sys.stdout,
    format=_format,
    colorize=True,
    level=settings.log_level,
    diagnose=settings.debug,
)
logging.basicConfig(handlers=[InterceptHandler()], level=settings.log_level, force=True)
for _name in ("uvicorn", "uvicorn.error", "sqlalchemy.engine"):
    _std_logger = logging.getLogger(_name)
    _std_logger.handlers = [InterceptHandler()]
    _std_logger.propagate = False
# access log 由 AccessLogMiddleware 负责
logging.getLogger("uvicorn.access").disabled = True

logger = _logger


def log(name: str):
    return _logger.bind(name=name)


access_logger = log("Access")


class AccessLogMiddleware(BaseHTTPMiddleware):
    """combined 格式的访问日志，DEBUG 级别"""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        client = request.client.host if request.client else "-"
        query = f"?{request.url.query}" if request.url.query else ""
        access_logger.debug(
            '{client} - "{method} {path} HTTP/{version}" {status} {length} "{referer}" "{agent}" {elapsed:.1f}ms',
            client=client,
            method=request.method,
            path=request.url.path + query,
            version=request.scope.get("http_version", "1.1"),
            status=response.status_code,
            length=response.headers.get("content-length", "-"),
            referer=request.headers.get("referer", "-"),
            agent=request.headers.get("user-agent", "-"),
            elapsed=elapsed,
        )
        return response
