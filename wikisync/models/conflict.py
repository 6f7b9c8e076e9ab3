"""
PageConflict 模型 - 需要人工处理的身份冲突记录。
"""
from datetime import datetime

from sqlalchemy import Text, Integer, BigInteger, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wikisync.models.base import Base


class PageConflict(Base):
    """同一 URL 出现了不同的上游 ID。"""
    __tablename__ = "page_conflict"
    __table_args__ = (
        Index("idx_page_conflict_open", "url", "resolved"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    existing_page_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    existing_upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    observed_upstream_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<PageConflict(url='{self.url[:50]}', existing={self.existing_upstream_id}, "
            f"observed={self.observed_upstream_id})>"
        )
