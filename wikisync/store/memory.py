"""
内存仓储实现，用于开发和测试。

单事件循环内每个方法中间没有 await，因此天然原子。
"""
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, Optional

from wikisync.core.errors import IntegrityViolation
from wikisync.models.dirty import DirtyReason, SyncPhase
from wikisync.store.base import (
    ConflictRepository,
    ContentRepository,
    DirtyQueueRepository,
    PageRepository,
    StagingRepository,
    SyncStore,
    VersionRepository,
)
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
    utcnow,
)


class MemoryPageRepository(PageRepository):

    def __init__(self):
        self._pages: dict[int, PageRecord] = {}
        self._next_id = 1

    async def get(self, page_id: int) -> Optional[PageRecord]:
        page = self._pages.get(page_id)
        return replace(page) if page else None

    async def get_by_upstream_id(self, upstream_id: int) -> Optional[PageRecord]:
        for page in self._pages.values():
            if page.upstream_id == upstream_id:
                return replace(page)
        return None

    async def get_by_url(self, url: str) -> Optional[PageRecord]:
        for page in self._pages.values():
            if page.url == url:
                return replace(page)
        return None

    async def create(self, upstream_id: int, url: str) -> PageRecord:
        if await self.get_by_upstream_id(upstream_id):
            raise IntegrityViolation(f"上游 ID 已存在: {upstream_id}")
        page = PageRecord(id=self._next_id, upstream_id=upstream_id, url=url)
        self._pages[page.id] = page
        self._next_id += 1
        return replace(page)

    async def update_url(self, page_id: int, url: str) -> None:
        self._pages[page_id].url = url


class MemoryVersionRepository(VersionRepository):

    def __init__(self):
        self._versions: list[VersionRecord] = []
        self._next_id = 1

    def _current(self, page_id: int) -> Optional[VersionRecord]:
        for version in self._versions:
            if version.page_id == page_id and version.valid_to is None:
                return version
        return None

    def _get(self, version_id: int) -> VersionRecord:
        for version in self._versions:
            if version.id == version_id:
                return version
        raise KeyError(version_id)

    def _insert(self, version: VersionRecord, at: datetime) -> VersionRecord:
        current = self._current(version.page_id)
        if current is not None:
            # 版本区间必须首尾相接且单调
            at = max(at, current.valid_from)
            current.valid_to = at
        stored = replace(version, id=self._next_id, valid_from=at, valid_to=None, tags=list(version.tags))
        self._next_id += 1
        self._versions.append(stored)
        return replace(stored)

    async def current(self, page_id: int) -> Optional[VersionRecord]:
        version = self._current(page_id)
        return replace(version) if version else None

    async def history(self, page_id: int) -> list[VersionRecord]:
        rows = [replace(v) for v in self._versions if v.page_id == page_id]
        return sorted(rows, key=lambda v: (v.valid_from, v.id))

    async def list_current(self) -> list[VersionRecord]:
        return [replace(v) for v in self._versions if v.valid_to is None]

    async def open_version(self, version: VersionRecord, at: datetime) -> VersionRecord:
        return self._insert(version, at)

    async def current_sources(self, page_ids: Optional[Iterable[int]] = None) -> dict[int, str]:
        wanted = set(page_ids) if page_ids is not None else None
        return {
            v.page_id: v.source
            for v in self._versions
            if v.valid_to is None and not v.is_deleted and v.source is not None
            and (wanted is None or v.page_id in wanted)
        }


class MemoryStagingRepository(StagingRepository):

    def __init__(self):
        self._rows: dict[str, StagingRecord] = {}

    async def clear(self) -> None:
        self._rows.clear()

    async def upsert_many(self, rows: list[StagingRecord]) -> None:
        for row in rows:
            self._rows[row.url] = replace(row, last_seen_at=row.last_seen_at or utcnow())

    async def get(self, url: str) -> Optional[StagingRecord]:
        row = self._rows.get(url)
        return replace(row) if row else None

    async def list_batch(self, after_url: Optional[str], limit: int) -> list[StagingRecord]:
        urls = sorted(u for u in self._rows if after_url is None or u > after_url)
        return [replace(self._rows[u]) for u in urls[:limit]]

    async def upstream_ids(self) -> set[int]:
        return {row.upstream_id for row in self._rows.values()}

    async def count(self) -> int:
        return len(self._rows)


class MemoryDirtyQueueRepository(DirtyQueueRepository):

    def __init__(self):
        self._rows: dict[int, DirtyRecord] = {}

    async def get(self, page_id: int) -> Optional[DirtyRecord]:
        row = self._rows.get(page_id)
        return replace(row, reasons=list(row.reasons)) if row else None

    async def mark_dirty(
        self,
        page_id: int,
        reasons: Iterable[DirtyReason],
        need_b: bool = False,
        need_c: bool = False,
        estimated_cost: Optional[int] = None,
    ) -> bool:
        row = self._rows.get(page_id)
        created = row is None
        if created:
            row = DirtyRecord(page_id=page_id, detected_at=utcnow())
            self._rows[page_id] = row
        if need_b:
            row.need_b, row.done_b = True, False
        if need_c:
            row.need_c, row.done_c = True, False
        for reason in reasons:
            if reason not in row.reasons:
                row.reasons.append(reason)
        if estimated_cost is not None:
            row.estimated_cost = estimated_cost
        return created

    @staticmethod
    def _lease(row: DirtyRecord, phase: SyncPhase) -> tuple[Optional[str], Optional[datetime]]:
        if phase is SyncPhase.B:
            return row.claim_b_token, row.claim_b_at
        return row.claim_c_token, row.claim_c_at

    @staticmethod
    def _set_lease(row: DirtyRecord, phase: SyncPhase, token: Optional[str], at: Optional[datetime]) -> None:
        if phase is SyncPhase.B:
            row.claim_b_token, row.claim_b_at = token, at
        else:
            row.claim_c_token, row.claim_c_at = token, at

    def _claimable(self, row: DirtyRecord, phase: SyncPhase, expired_before: datetime) -> bool:
        if row.blocked or not row.pending(phase):
            return False
        # Phase C 等待 Phase B 完成
        if phase is SyncPhase.C and row.pending(SyncPhase.B):
            return False
        token, claimed_at = self._lease(row, phase)
        return token is None or claimed_at is None or claimed_at < expired_before

    async def claim(
        self,
        phase: SyncPhase,
        limit: int,
        lease_seconds: float,
        now: Optional[datetime] = None,
    ) -> list[Claim]:
        now = now or utcnow()
        expired_before = now - timedelta(seconds=lease_seconds)
        token = uuid.uuid4().hex
        candidates = sorted(
            (row for row in self._rows.values() if self._claimable(row, phase, expired_before)),
            key=lambda row: (row.estimated_cost, row.page_id),
        )
        claims = []
        for row in candidates[:limit]:
            self._set_lease(row, phase, token, now)
            claims.append(Claim(page_id=row.page_id, phase=phase, token=token, estimated_cost=row.estimated_cost))
        return claims

    def _held(self, phase: SyncPhase, page_id: int, token: str) -> Optional[DirtyRecord]:
        row = self._rows.get(page_id)
        if row is None or self._lease(row, phase)[0] != token:
            return None
        return row

    async def complete(self, phase: SyncPhase, page_id: int, token: str) -> bool:
        row = self._held(phase, page_id, token)
        if row is None:
            return False
        if phase is SyncPhase.B:
            row.done_b, row.need_b = True, False
        else:
            row.done_c, row.need_c = True, False
        self._set_lease(row, phase, None, None)
        return True

    async def record_failure(
        self,
        phase: SyncPhase,
        page_id: int,
        token: str,
        error: str,
        permanent: bool = False,
    ) -> None:
        row = self._held(phase, page_id, token)
        if row is None:
            return
        if DirtyReason.PREVIOUSLY_FAILED not in row.reasons:
            row.reasons.append(DirtyReason.PREVIOUSLY_FAILED)
        row.last_error = error
        if permanent:
            row.blocked = True
        self._set_lease(row, phase, None, None)

    async def release(self, phase: SyncPhase, page_id: int, token: str) -> None:
        row = self._held(phase, page_id, token)
        if row is not None:
            self._set_lease(row, phase, None, None)

    async def clear_need(self, phase: SyncPhase, page_id: int) -> None:
        row = self._rows.get(page_id)
        if row is None:
            return
        if phase is SyncPhase.B:
            row.need_b = False
        else:
            row.need_c = False
        self._set_lease(row, phase, None, None)

    async def unblock(self, page_id: int) -> None:
        row = self._rows.get(page_id)
        if row is not None:
            row.blocked = False
            row.last_error = None

    async def pending(self, phase: SyncPhase, limit: Optional[int] = None) -> list[DirtyRecord]:
        rows = sorted(
            (row for row in self._rows.values() if row.pending(phase)),
            key=lambda row: (row.estimated_cost, row.page_id),
        )
        rows = rows[:limit] if limit is not None else rows
        return [replace(row, reasons=list(row.reasons)) for row in rows]

    async def summary(self) -> dict[str, int]:
        rows = list(self._rows.values())
        return {
            "total": len(rows),
            "pending_b": sum(1 for row in rows if row.pending(SyncPhase.B)),
            "pending_c": sum(1 for row in rows if row.pending(SyncPhase.C)),
            "blocked": sum(1 for row in rows if row.blocked),
        }


class MemoryContentRepository(ContentRepository):

    def __init__(self, versions: MemoryVersionRepository):
        self._versions = versions
        self._attributions: dict[int, list[AttributionRecord]] = {}
        self._votes: dict[int, list[VoteRecord]] = {}
        self._revisions: dict[int, list[RevisionRecord]] = {}

    @staticmethod
    def _merge(existing: list, incoming: list) -> int:
        keys = {item.key for item in existing}
        added = 0
        for item in incoming:
            if item.key in keys:
                continue
            existing.append(replace(item))
            keys.add(item.key)
            added += 1
        return added

    async def commit_deep(self, page_id: int, content: DeepContent, at: datetime) -> DeepCommitResult:
        current = self._versions._current(page_id)
        if current is None:
            raise IntegrityViolation(f"页面 {page_id} 没有当前版本，无法提交正文", page_id=page_id)

        result = DeepCommitResult(version_id=current.id)
        if current.source is None:
            current.source = content.source
            current.text_content = content.text_content
            result.content_filled = content.source is not None
        elif content.source is not None and current.source != content.source:
            opened = self._versions._insert(
                current.successor(source=content.source, text_content=content.text_content), at
            )
            result.version_id = opened.id
            result.version_opened = True

        vid = result.version_id
        result.attributions_added = self._merge(self._attributions.setdefault(vid, []), content.attributions)
        result.votes_added = self._merge(self._votes.setdefault(vid, []), content.votes)
        result.revisions_added = self._merge(self._revisions.setdefault(vid, []), content.revisions)
        return result

    async def attributions(self, version_id: int) -> list[AttributionRecord]:
        return [replace(a) for a in self._attributions.get(version_id, [])]

    async def votes(self, version_id: int) -> list[VoteRecord]:
        return [replace(v) for v in self._votes.get(version_id, [])]

    async def revisions(self, version_id: int) -> list[RevisionRecord]:
        return [replace(r) for r in self._revisions.get(version_id, [])]


class MemoryConflictRepository(ConflictRepository):

    def __init__(self):
        self._rows: list[ConflictRecord] = []

    async def flag(
        self,
        url: str,
        existing_page_id: int,
        existing_upstream_id: int,
        observed_upstream_id: int,
    ) -> bool:
        for row in self._rows:
            if (not row.resolved and row.url == url
                    and row.existing_upstream_id == existing_upstream_id
                    and row.observed_upstream_id == observed_upstream_id):
                return False
        self._rows.append(ConflictRecord(
            id=len(self._rows) + 1,
            url=url,
            existing_page_id=existing_page_id,
            existing_upstream_id=existing_upstream_id,
            observed_upstream_id=observed_upstream_id,
            detected_at=utcnow(),
        ))
        return True

    async def list_open(self) -> list[ConflictRecord]:
        return [replace(row) for row in self._rows if not row.resolved]


def create_memory_store() -> SyncStore:
    """创建一组互相关联的内存仓储。"""
    versions = MemoryVersionRepository()
    return SyncStore(
        pages=MemoryPageRepository(),
        versions=versions,
        staging=MemoryStagingRepository(),
        dirty=MemoryDirtyQueueRepository(),
        content=MemoryContentRepository(versions),
        conflicts=MemoryConflictRepository(),
    )
