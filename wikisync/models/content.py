"""
Attribution / Vote / Revision 模型 - 归属于某个页面版本的子集合。

三者都只做集合合并: 新记录插入，已有记录保留，从不删除。
"""
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import (
    Text, Integer, BigInteger, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wikisync.models.base import Base

if TYPE_CHECKING:
    from wikisync.models.page import PageVersion


class Attribution(Base):
    """作者/译者等归属信息。user_key 为用户 ID 或显示名，用于去重。"""
    __tablename__ = "attribution"
    __table_args__ = (
        UniqueConstraint("page_version_id", "type", "user_key", name="uq_attribution_key"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    page_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("page_version.id", ondelete="CASCADE"),
        nullable=False
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    user_key: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    page_version: Mapped["PageVersion"] = relationship("PageVersion", back_populates="attributions")

    def __repr__(self) -> str:
        return f"<Attribution(version={self.page_version_id}, type={self.type}, user={self.user_key})>"


class Vote(Base):
    """投票记录。注册用户按 user_id 去重，匿名投票按 anon_key 去重。"""
    __tablename__ = "vote"
    __table_args__ = (
        UniqueConstraint("page_version_id", "user_id", "timestamp", name="uq_vote_user"),
        UniqueConstraint("page_version_id", "anon_key", "timestamp", name="uq_vote_anon"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    page_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("page_version.id", ondelete="CASCADE"),
        nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    anon_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    direction: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    page_version: Mapped["PageVersion"] = relationship("PageVersion", back_populates="votes")

    def __repr__(self) -> str:
        voter = self.user_id if self.user_id is not None else self.anon_key
        return f"<Vote(version={self.page_version_id}, voter={voter}, direction={self.direction})>"


class Revision(Base):
    """修订记录，以上游修订 ID 去重。"""
    __tablename__ = "revision"
    __table_args__ = (
        UniqueConstraint("page_version_id", "upstream_id", name="uq_revision_upstream"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    page_version_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("page_version.id", ondelete="CASCADE"),
        nullable=False
    )
    upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    page_version: Mapped["PageVersion"] = relationship("PageVersion", back_populates="revisions")

    def __repr__(self) -> str:
        return f"<Revision(version={self.page_version_id}, upstream_id={self.upstream_id})>"
