from contextlib import asynccontextmanager

from rhythmhub.config import settings
from rhythmhub.dependencies.database import close_connections, get_engine
from rhythmhub.log import AccessLogMiddleware, logger
from rhythmhub.router import levels_router, profile_router, session_router, users_router

from fastapi import FastAPI
from sqlmodel import SQLModel


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        # 导入所有表
        import rhythmhub.database  # noqa: F401

        async with get_engine().begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database tables ensured")
    logger.opt(colors=True).info(f"Server started at <cyan>{settings.api_base}</cyan>")
    yield
    await close_connections()
    logger.info("Server stopped")


app = FastAPI(
    title="rhythmhub",
    version="1.0.0",
    description="音游社区后端：用户、谱面、排行榜与评分",
    lifespan=lifespan,
)
app.add_middleware(AccessLogMiddleware)

app.include_router(session_router)
app.include_router(users_router)
app.include_router(levels_router)
app.include_router(profile_router)


@app.get("/", include_in_schema=False)
async def root():
    return {"name": "rhythmhub", "version": app.version}
