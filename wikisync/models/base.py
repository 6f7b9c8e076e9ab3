"""
wikisync 模型的 SQLAlchemy Base 声明。
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# PostgreSQL 下使用 JSONB，其他方言退化为 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """所有 SQLAlchemy 模型的基类。"""
    pass
