from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from docsumm.core.config import settings
from docsumm.db import models  # noqa: F401  (registers tables on Base.metadata)
from docsumm.db.base import Base


def create_engine_for(database_url: str) -> AsyncEngine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # concurrent claimers wait on the write lock instead of failing fast
        connect_args = {"timeout": 20}
    return create_async_engine(database_url, echo=False, future=True, connect_args=connect_args)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


engine: AsyncEngine = create_engine_for(settings.database_url)

AsyncSessionLocal = create_session_maker(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal
