"""
wikisync 存储仓储接口。
每个实体一个仓储，提供内存实现 (测试) 和 SQLAlchemy 实现 (生产)。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from wikisync.models.dirty import DirtyReason, SyncPhase
from wikisync.store.records import (
    AttributionRecord,
    Claim,
    ConflictRecord,
    DeepCommitResult,
    DeepContent,
    DirtyRecord,
    PageRecord,
    RevisionRecord,
    StagingRecord,
    VersionRecord,
    VoteRecord,
)


class PageRepository(ABC):
    """页面身份仓储。"""

    @abstractmethod
    async def get(self, page_id: int) -> Optional[PageRecord]:
        pass

    @abstractmethod
    async def get_by_upstream_id(self, upstream_id: int) -> Optional[PageRecord]:
        pass

    @abstractmethod
    async def get_by_url(self, url: str) -> Optional[PageRecord]:
        pass

    @abstractmethod
    async def create(self, upstream_id: int, url: str) -> PageRecord:
        pass

    @abstractmethod
    async def update_url(self, page_id: int, url: str) -> None:
        pass


class VersionRepository(ABC):
    """页面版本仓储。"""

    @abstractmethod
    async def current(self, page_id: int) -> Optional[VersionRecord]:
        """返回当前版本 (valid_to 为空)。"""
        pass

    @abstractmethod
    async def history(self, page_id: int) -> list[VersionRecord]:
        """按 valid_from 升序返回全部版本。"""
        pass

    @abstractmethod
    async def list_current(self) -> list[VersionRecord]:
        """返回所有页面的当前版本。"""
        pass

    @abstractmethod
    async def open_version(self, version: VersionRecord, at: datetime) -> VersionRecord:
        """
        关闭页面的当前版本 (valid_to = at) 并插入新版本 (valid_from = at)。

        两步在同一事务中完成，保证任意时刻至多一个当前版本。
        """
        pass

    @abstractmethod
    async def current_sources(self, page_ids: Optional[Iterable[int]] = None) -> dict[int, str]:
        """返回当前版本的源码 (仅包含已抓取正文且未删除的页面)。"""
        pass


class StagingRepository(ABC):
    """元数据暂存仓储。"""

    @abstractmethod
    async def clear(self) -> None:
        pass

    @abstractmethod
    async def upsert_many(self, rows: list[StagingRecord]) -> None:
        """按 URL 插入或覆盖。"""
        pass

    @abstractmethod
    async def get(self, url: str) -> Optional[StagingRecord]:
        pass

    @abstractmethod
    async def list_batch(self, after_url: Optional[str], limit: int) -> list[StagingRecord]:
        """按 URL 升序做键集分页。"""
        pass

    @abstractmethod
    async def upstream_ids(self) -> set[int]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class DirtyQueueRepository(ABC):
    """
    脏页工作队列仓储。

    领取 (claim) 是逐行的条件更新: 只有满足 need && !done && !blocked
    且租约空闲或已过期的行才会被写入本次的 token。
    完成 (complete) 同样以持有 token 为条件。
    """

    @abstractmethod
    async def get(self, page_id: int) -> Optional[DirtyRecord]:
        pass

    @abstractmethod
    async def mark_dirty(
        self,
        page_id: int,
        reasons: Iterable[DirtyReason],
        need_b: bool = False,
        need_c: bool = False,
        estimated_cost: Optional[int] = None,
    ) -> bool:
        """
        标记页面为脏，返回是否新建了行。

        已有行的 need 标志按位或合并，新请求的阶段 done 复位为 False，
        原因去重追加，blocked 状态保持不变。
        """
        pass

    @abstractmethod
    async def claim(
        self,
        phase: SyncPhase,
        limit: int,
        lease_seconds: float,
        now: Optional[datetime] = None,
    ) -> list[Claim]:
        """按成本升序领取至多 limit 行。"""
        pass

    @abstractmethod
    async def complete(self, phase: SyncPhase, page_id: int, token: str) -> bool:
        """done = True, need = False，并释放租约。未持有租约时返回 False。"""
        pass

    @abstractmethod
    async def record_failure(
        self,
        phase: SyncPhase,
        page_id: int,
        token: str,
        error: str,
        permanent: bool = False,
    ) -> None:
        """记录失败并释放租约，永久失败时置 blocked。"""
        pass

    @abstractmethod
    async def release(self, phase: SyncPhase, page_id: int, token: str) -> None:
        pass

    @abstractmethod
    async def clear_need(self, phase: SyncPhase, page_id: int) -> None:
        """撤销某阶段的需求 (例如页面已删除，不再需要 Phase C)。"""
        pass

    @abstractmethod
    async def unblock(self, page_id: int) -> None:
        pass

    @abstractmethod
    async def pending(self, phase: SyncPhase, limit: Optional[int] = None) -> list[DirtyRecord]:
        pass

    @abstractmethod
    async def summary(self) -> dict[str, int]:
        """返回 total / pending_b / pending_c / blocked 计数。"""
        pass


class ContentRepository(ABC):
    """版本子集合 (归属、投票、修订) 仓储。"""

    @abstractmethod
    async def commit_deep(self, page_id: int, content: DeepContent, at: datetime) -> DeepCommitResult:
        """
        原子提交 Phase C 的抓取结果。

        当前版本没有正文时原地补全；正文不同则开启新版本；
        随后把归属、投票、修订按键合并到该版本，只插入不删除。
        """
        pass

    @abstractmethod
    async def attributions(self, version_id: int) -> list[AttributionRecord]:
        pass

    @abstractmethod
    async def votes(self, version_id: int) -> list[VoteRecord]:
        pass

    @abstractmethod
    async def revisions(self, version_id: int) -> list[RevisionRecord]:
        pass


class ConflictRepository(ABC):
    """身份冲突记录仓储。"""

    @abstractmethod
    async def flag(
        self,
        url: str,
        existing_page_id: int,
        existing_upstream_id: int,
        observed_upstream_id: int,
    ) -> bool:
        """登记冲突，同一未解决冲突不重复登记。返回是否新登记。"""
        pass

    @abstractmethod
    async def list_open(self) -> list[ConflictRecord]:
        pass


@dataclass
class SyncStore:
    """同步流程使用的全部仓储。"""
    pages: PageRepository
    versions: VersionRepository
    staging: StagingRepository
    dirty: DirtyQueueRepository
    content: ContentRepository
    conflicts: ConflictRepository
