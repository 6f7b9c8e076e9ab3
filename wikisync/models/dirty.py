"""
DirtyPage 模型 - 需要 Phase B / Phase C 处理的工作队列。
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Text, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wikisync.models.base import Base, JSONType


class SyncPhase(PyEnum):
    """同步阶段枚举。"""
    A = "a"
    B = "b"
    C = "c"


class DirtyReason(PyEnum):
    """页面被标记为脏的原因 (同一行可有多个)。"""
    NEW_PAGE = "new_page"
    RATING_CHANGED = "rating_changed"
    VOTE_COUNT_CHANGED = "vote_count_changed"
    REVISION_COUNT_CHANGED = "revision_count_changed"
    TAGS_CHANGED = "tags_changed"
    TITLE_CHANGED = "title_changed"
    CATEGORY_CHANGED = "category_changed"
    DELETION_CHANGED = "deletion_changed"
    INCOMPLETE_VOTES = "incomplete_votes"
    INCOMPLETE_REVISIONS = "incomplete_revisions"
    CONTENT_STALE = "content_stale"
    PREVIOUSLY_FAILED = "previously_failed"
    IDENTITY_CONFLICT = "identity_conflict"
    MANUAL = "manual"


class DirtyPage(Base):
    """
    DirtyPage 实体，每个页面至多一行。

    need_* 表示需要执行的阶段，done_* 表示本轮已完成；
    claim_*_token / claim_*_at 为阶段级租约，超时后可被其他进程重新领取。
    blocked 表示永久失败，等待人工 seed 解除。
    """
    __tablename__ = "dirty_page"
    __table_args__ = (
        Index("idx_dirty_page_b", "need_phase_b", "done_phase_b", "estimated_cost"),
        Index("idx_dirty_page_c", "need_phase_c", "done_phase_c", "estimated_cost"),
    )

    page_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("page.id", ondelete="CASCADE"),
        primary_key=True
    )

    need_phase_b: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    need_phase_c: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    done_phase_b: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    done_phase_c: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # DirtyReason 值列表
    reasons: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    estimated_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 租约
    claim_b_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claim_b_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_c_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claim_c_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # 时间戳
    detected_at: Mapped[datetime] = mapped_column(
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

    def __repr__(self) -> str:
        return (
            f"<DirtyPage(page_id={self.page_id}, b={self.need_phase_b}/{self.done_phase_b}, "
            f"c={self.need_phase_c}/{self.done_phase_c}, reasons={self.reasons})>"
        )
