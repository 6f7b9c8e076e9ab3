"""
存储层的数据记录。

仓储接口只交换这些纯数据对象，不暴露 ORM 实例，
因此内存实现和 SQL 实现可以互换。
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from wikisync.models.dirty import DirtyReason, SyncPhase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 读回的时间不带时区，统一视为 UTC。"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class PageMeta:
    """上游返回的页面元数据 (Phase A 扫描 / Phase B 详情)。"""
    url: str
    upstream_id: int
    title: Optional[str] = None
    rating: Optional[int] = None
    vote_count: Optional[int] = None
    revision_count: Optional[int] = None
    comment_count: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    category: Optional[str] = None
    is_deleted: bool = False


@dataclass
class StagingRecord(PageMeta):
    """暂存表中的一行。"""
    estimated_cost: int = 0
    last_seen_at: Optional[datetime] = None


@dataclass
class PageRecord:
    id: int
    upstream_id: int
    url: str


@dataclass
class VersionRecord:
    """页面版本。valid_to 为空表示当前版本。"""
    page_id: int
    upstream_id: int
    title: Optional[str] = None
    rating: Optional[int] = None
    vote_count: Optional[int] = None
    revision_count: Optional[int] = None
    comment_count: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    category: Optional[str] = None
    is_deleted: bool = False
    source: Optional[str] = None
    text_content: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    @classmethod
    def from_meta(cls, page_id: int, meta: PageMeta, previous: Optional["VersionRecord"] = None) -> "VersionRecord":
        """由上游元数据构建新版本，正文从上一个版本继承。"""
        return cls(
            page_id=page_id,
            upstream_id=meta.upstream_id,
            title=meta.title,
            rating=meta.rating,
            vote_count=meta.vote_count,
            revision_count=meta.revision_count,
            comment_count=meta.comment_count,
            tags=list(meta.tags),
            category=meta.category,
            is_deleted=meta.is_deleted,
            source=previous.source if previous else None,
            text_content=previous.text_content if previous else None,
        )

    def successor(self, **changes) -> "VersionRecord":
        """复制为一个待插入的新版本。"""
        changes.setdefault("tags", list(self.tags))
        return replace(self, id=None, valid_from=None, valid_to=None, **changes)


def material_key(item) -> tuple:
    """
    版本比较所用的实质字段。

    PageMeta 与 VersionRecord 字段同名，二者可直接比较；标签按集合比较。
    """
    return (
        item.title,
        item.rating,
        item.vote_count,
        item.revision_count,
        item.comment_count,
        tuple(sorted(set(item.tags or []))),
        item.category,
        bool(item.is_deleted),
    )


@dataclass
class DirtyRecord:
    page_id: int
    need_b: bool = False
    need_c: bool = False
    done_b: bool = False
    done_c: bool = False
    reasons: list[DirtyReason] = field(default_factory=list)
    estimated_cost: int = 0
    blocked: bool = False
    last_error: Optional[str] = None
    detected_at: Optional[datetime] = None
    claim_b_token: Optional[str] = None
    claim_b_at: Optional[datetime] = None
    claim_c_token: Optional[str] = None
    claim_c_at: Optional[datetime] = None

    def pending(self, phase: SyncPhase) -> bool:
        if phase is SyncPhase.B:
            return self.need_b and not self.done_b
        if phase is SyncPhase.C:
            return self.need_c and not self.done_c
        return False


@dataclass(frozen=True)
class Claim:
    """一次成功领取的租约。"""
    page_id: int
    phase: SyncPhase
    token: str
    estimated_cost: int = 0


@dataclass
class AttributionRecord:
    type: str
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    order: int = 0
    date: Optional[datetime] = None

    @property
    def user_key(self) -> str:
        return str(self.user_id) if self.user_id is not None else (self.user_name or "")

    @property
    def key(self) -> tuple:
        return (self.type, self.user_key)


@dataclass
class VoteRecord:
    direction: int
    timestamp: datetime
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    anon_key: Optional[str] = None

    @property
    def key(self) -> tuple:
        # 注册用户与匿名投票分别去重
        if self.user_id is not None:
            return ("user", self.user_id, self.timestamp)
        return ("anon", self.anon_key, self.timestamp)


@dataclass
class RevisionRecord:
    upstream_id: int
    timestamp: datetime
    type: Optional[str] = None
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    comment: Optional[str] = None

    @property
    def key(self) -> int:
        return self.upstream_id


@dataclass
class DeepContent:
    """Phase C 为单个页面收集的全部内容，全部抓取成功后才提交。"""
    url: str
    source: Optional[str] = None
    text_content: Optional[str] = None
    attributions: list[AttributionRecord] = field(default_factory=list)
    votes: list[VoteRecord] = field(default_factory=list)
    revisions: list[RevisionRecord] = field(default_factory=list)


@dataclass
class DeepCommitResult:
    version_id: int
    version_opened: bool = False
    content_filled: bool = False
    attributions_added: int = 0
    votes_added: int = 0
    revisions_added: int = 0


@dataclass
class ConflictRecord:
    url: str
    existing_page_id: int
    existing_upstream_id: int
    observed_upstream_id: int
    resolved: bool = False
    detected_at: Optional[datetime] = None
    id: Optional[int] = None
