"""
Page / PageVersion 模型 - 页面身份与双时态版本。
"""
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import (
    Text, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from wikisync.models.base import Base, JSONType

if TYPE_CHECKING:
    from wikisync.models.content import Attribution, Revision, Vote


class Page(Base):
    """
    Page 实体，代表上游的一个页面。

    upstream_id 一经确定不可变；url 可能随上游改名而变化。
    """
    __tablename__ = "page"
    __table_args__ = (
        Index("idx_page_url", "url"),
    )

    # 主键
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # 身份
    upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)

    # 时间戳
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    # 关系
    versions: Mapped[List["PageVersion"]] = relationship(
        "PageVersion", back_populates="page", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Page(id={self.id}, upstream_id={self.upstream_id}, url='{self.url[:50]}')>"


class PageVersion(Base):
    """
    PageVersion 实体，页面在 [valid_from, valid_to) 区间内的状态。

    valid_to 为空表示当前版本，每个页面至多一个当前版本。
    """
    __tablename__ = "page_version"
    __table_args__ = (
        Index("idx_page_version_page", "page_id", "valid_from"),
        Index(
            "uq_page_version_current", "page_id",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
    )

    # 主键
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # 外键
    page_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("page.id", ondelete="CASCADE"),
        nullable=False
    )
    upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # 元数据
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vote_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    revision_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    comment_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # 正文 (Phase C 填充)
    source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 有效区间
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    # 关系
    page: Mapped["Page"] = relationship("Page", back_populates="versions")
    attributions: Mapped[List["Attribution"]] = relationship(
        "Attribution", back_populates="page_version", cascade="all, delete-orphan"
    )
    votes: Mapped[List["Vote"]] = relationship(
        "Vote", back_populates="page_version", cascade="all, delete-orphan"
    )
    revisions: Mapped[List["Revision"]] = relationship(
        "Revision", back_populates="page_version", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<PageVersion(id={self.id}, page_id={self.page_id}, "
            f"valid_from={self.valid_from}, valid_to={self.valid_to})>"
        )
