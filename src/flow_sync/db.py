from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from flow_sync.config import settings
from flow_sync.db_urls import ensure_sqlite_parent_dir, normalize_database_url_for_async

# One engine per store URL; tests point stores at per-test sqlite files.
_engines: dict[str, AsyncEngine] = {}


def _create_async_engine(database_url: str) -> AsyncEngine:
    # 运行时统一使用异步 driver，避免默认 driver 选择导致不可预期行为
    ensure_sqlite_parent_dir(database_url)
    url = normalize_database_url_for_async(database_url)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def get_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.store_database_url
    engine = _engines.get(url)
    if engine is None:
        engine = _create_async_engine(url)
        _engines[url] = engine
    return engine


async def dispose_engines() -> None:
    engines = list(_engines.values())
    _engines.clear()
    for engine in engines:
        await engine.dispose()


async def init_db(database_url: str | None = None) -> None:
    # 本地存储没有迁移流程：首次使用时直接建表
    engine = get_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def session_scope(database_url: str | None = None) -> AsyncIterator[AsyncSession]:
    session_maker = async_sessionmaker(
        get_engine(database_url), class_=AsyncSession, expire_on_commit=False
    )
    async with session_maker() as session:
        yield session
