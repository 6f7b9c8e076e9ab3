"""
PageMetaStaging 模型 - Phase A 扫描结果的暂存表。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import Text, Integer, BigInteger, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wikisync.models.base import Base, JSONType


class PageMetaStaging(Base):
    """
    每次元数据扫描看到的页面轻量快照，以 URL 为键。

    全量扫描开始时清空，扫描结束后与当前版本做差异比较。
    """
    __tablename__ = "page_meta_staging"

    url: Mapped[str] = mapped_column(Text, primary_key=True)
    upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vote_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    revision_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    comment_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    estimated_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<PageMetaStaging(url='{self.url[:50]}', upstream_id={self.upstream_id})>"
