"""
wikisync 数据库模块。
提供异步数据库连接和会话管理。
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine,
)

from wikisync.core.config import get_settings
from wikisync.core.logging import get_logger

logger = get_logger(__name__)

# 全局引擎和会话工厂
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """获取或创建异步数据库引擎。"""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.database.require_url()
        options = {"echo": settings.database.echo_sql}
        # SQLite 不支持连接池参数
        if not url.startswith("sqlite"):
            options.update(
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout_seconds,
            )
        _engine = create_async_engine(url, **options)
        logger.info(f"数据库引擎已创建: {url.split('@')[-1]}")
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """为指定引擎创建会话工厂。"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取或创建异步会话工厂。"""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    获取异步数据库会话，退出时提交，异常时回滚。

    用法:
        async with get_session() as session:
            result = await session.execute(query)
    """
    factory = factory or get_session_factory()
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_database() -> None:
    """初始化数据库连接池。"""
    engine = get_engine()
    # 测试连接
    async with engine.begin() as conn:
        await conn.run_sync(lambda _: None)
    logger.info("数据库连接池已初始化")


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """按模型定义创建所有表 (已存在的表跳过)。"""
    from wikisync.models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"数据表已就绪: {', '.join(sorted(Base.metadata.tables))}")


async def close_database() -> None:
    """关闭数据库连接池。"""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("数据库连接池已关闭")
