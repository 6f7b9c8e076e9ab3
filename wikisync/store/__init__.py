# Repository layer
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikisync.store.base import SyncStore
from wikisync.store.memory import create_memory_store


def get_store(
    use_memory: bool = False,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> SyncStore:
    """
    获取仓储集合。

    Args:
        use_memory: 使用内存实现 (测试/演练)
        session_factory: 可选的会话工厂，默认使用全局数据库配置
    """
    if use_memory:
        return create_memory_store()

    from wikisync.core.database import get_session_factory
    from wikisync.store.sql import create_sql_store

    return create_sql_store(session_factory or get_session_factory())


__all__ = ["SyncStore", "get_store", "create_memory_store"]
