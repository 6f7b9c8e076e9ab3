"""
SQLAlchemy 仓储实现。

每个方法使用独立会话，退出时提交；需要原子性的组合操作
(开启版本、Phase C 提交) 在同一会话内完成。
"""
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikisync.core.database import get_session
from wikisync.core.errors import IntegrityViolation
from wikisync.core.logging import get_logger
from wikisync.models import (
    Attribution,
    DirtyPage,
    DirtyReason,
    Page,
    PageConflict,
    PageMetaStaging,
    PageVersion,
    Revision,
    SyncPhase,
    Vote,
)
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
    as_utc,
    utcnow,
)

logger = get_logger(__name__)


class _SqlRepository:
    """持有会话工厂的仓储基类。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    def _session(self):
        return get_session(self._factory)


def _to_page(row: Page) -> PageRecord:
    return PageRecord(id=row.id, upstream_id=row.upstream_id, url=row.url)


def _to_version(row: PageVersion) -> VersionRecord:
    return VersionRecord(
        id=row.id,
        page_id=row.page_id,
        upstream_id=row.upstream_id,
        title=row.title,
        rating=row.rating,
        vote_count=row.vote_count,
        revision_count=row.revision_count,
        comment_count=row.comment_count,
        tags=list(row.tags or []),
        category=row.category,
        is_deleted=row.is_deleted,
        source=row.source,
        text_content=row.text_content,
        valid_from=as_utc(row.valid_from),
        valid_to=as_utc(row.valid_to),
    )


def _to_dirty(row: DirtyPage) -> DirtyRecord:
    return DirtyRecord(
        page_id=row.page_id,
        need_b=row.need_phase_b,
        need_c=row.need_phase_c,
        done_b=row.done_phase_b,
        done_c=row.done_phase_c,
        reasons=[DirtyReason(value) for value in row.reasons or []],
        estimated_cost=row.estimated_cost,
        blocked=row.blocked,
        last_error=row.last_error,
        detected_at=as_utc(row.detected_at),
        claim_b_token=row.claim_b_token,
        claim_b_at=as_utc(row.claim_b_at),
        claim_c_token=row.claim_c_token,
        claim_c_at=as_utc(row.claim_c_at),
    )


class SqlPageRepository(_SqlRepository, PageRepository):

    async def _one(self, *criteria) -> Optional[PageRecord]:
        async with self._session() as session:
            row = (await session.execute(select(Page).where(*criteria))).scalars().first()
            return _to_page(row) if row else None

    async def get(self, page_id: int) -> Optional[PageRecord]:
        return await self._one(Page.id == page_id)

    async def get_by_upstream_id(self, upstream_id: int) -> Optional[PageRecord]:
        return await self._one(Page.upstream_id == upstream_id)

    async def get_by_url(self, url: str) -> Optional[PageRecord]:
        return await self._one(Page.url == url)

    async def create(self, upstream_id: int, url: str) -> PageRecord:
        try:
            async with self._session() as session:
                row = Page(upstream_id=upstream_id, url=url)
                session.add(row)
                await session.flush()
                return _to_page(row)
        except IntegrityError as exc:
            raise IntegrityViolation(f"上游 ID 已存在: {upstream_id}") from exc

    async def update_url(self, page_id: int, url: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(Page).where(Page.id == page_id).values(url=url, updated_at=func.now())
            )


async def _current_version(session: AsyncSession, page_id: int) -> Optional[PageVersion]:
    stmt = select(PageVersion).where(PageVersion.page_id == page_id, PageVersion.valid_to.is_(None))
    return (await session.execute(stmt)).scalars().first()


async def _open_version(session: AsyncSession, version: VersionRecord, at: datetime) -> PageVersion:
    """在给定会话内关闭当前版本并插入新版本。"""
    current = await _current_version(session, version.page_id)
    if current is not None:
        # 版本区间必须首尾相接且单调
        at = max(at, as_utc(current.valid_from))
        current.valid_to = at
        # 先落库关闭，再插入，避免违反当前版本唯一索引
        await session.flush()

    row = PageVersion(
        page_id=version.page_id,
        upstream_id=version.upstream_id,
        title=version.title,
        rating=version.rating,
        vote_count=version.vote_count,
        revision_count=version.revision_count,
        comment_count=version.comment_count,
        tags=list(version.tags),
        category=version.category,
        is_deleted=version.is_deleted,
        source=version.source,
        text_content=version.text_content,
        valid_from=at,
        valid_to=None,
    )
    session.add(row)
    await session.flush()
    return row


class SqlVersionRepository(_SqlRepository, VersionRepository):

    async def current(self, page_id: int) -> Optional[VersionRecord]:
        async with self._session() as session:
            row = await _current_version(session, page_id)
            return _to_version(row) if row else None

    async def history(self, page_id: int) -> list[VersionRecord]:
        async with self._session() as session:
            stmt = (
                select(PageVersion)
                .where(PageVersion.page_id == page_id)
                .order_by(PageVersion.valid_from, PageVersion.id)
            )
            return [_to_version(row) for row in (await session.execute(stmt)).scalars()]

    async def list_current(self) -> list[VersionRecord]:
        async with self._session() as session:
            stmt = select(PageVersion).where(PageVersion.valid_to.is_(None)).order_by(PageVersion.page_id)
            return [_to_version(row) for row in (await session.execute(stmt)).scalars()]

    async def open_version(self, version: VersionRecord, at: datetime) -> VersionRecord:
        async with self._session() as session:
            row = await _open_version(session, version, at)
            return _to_version(row)

    async def current_sources(self, page_ids: Optional[Iterable[int]] = None) -> dict[int, str]:
        async with self._session() as session:
            stmt = select(PageVersion.page_id, PageVersion.source).where(
                PageVersion.valid_to.is_(None),
                PageVersion.is_deleted.is_(False),
                PageVersion.source.is_not(None),
            )
            if page_ids is not None:
                stmt = stmt.where(PageVersion.page_id.in_(list(page_ids)))
            return {page_id: source for page_id, source in (await session.execute(stmt)).all()}


class SqlStagingRepository(_SqlRepository, StagingRepository):

    @staticmethod
    def _to_record(row: PageMetaStaging) -> StagingRecord:
        return StagingRecord(
            url=row.url,
            upstream_id=row.upstream_id,
            title=row.title,
            rating=row.rating,
            vote_count=row.vote_count,
            revision_count=row.revision_count,
            comment_count=row.comment_count,
            tags=list(row.tags or []),
            category=row.category,
            is_deleted=row.is_deleted,
            estimated_cost=row.estimated_cost,
            last_seen_at=as_utc(row.last_seen_at),
        )

    async def clear(self) -> None:
        async with self._session() as session:
            await session.execute(PageMetaStaging.__table__.delete())

    async def upsert_many(self, rows: list[StagingRecord]) -> None:
        now = utcnow()
        async with self._session() as session:
            for row in rows:
                await session.merge(PageMetaStaging(
                    url=row.url,
                    upstream_id=row.upstream_id,
                    title=row.title,
                    rating=row.rating,
                    vote_count=row.vote_count,
                    revision_count=row.revision_count,
                    comment_count=row.comment_count,
                    tags=list(row.tags),
                    category=row.category,
                    is_deleted=row.is_deleted,
                    estimated_cost=row.estimated_cost,
                    last_seen_at=row.last_seen_at or now,
                ))

    async def get(self, url: str) -> Optional[StagingRecord]:
        async with self._session() as session:
            row = await session.get(PageMetaStaging, url)
            return self._to_record(row) if row else None

    async def list_batch(self, after_url: Optional[str], limit: int) -> list[StagingRecord]:
        async with self._session() as session:
            stmt = select(PageMetaStaging).order_by(PageMetaStaging.url).limit(limit)
            if after_url is not None:
                stmt = stmt.where(PageMetaStaging.url > after_url)
            return [self._to_record(row) for row in (await session.execute(stmt)).scalars()]

    async def upstream_ids(self) -> set[int]:
        async with self._session() as session:
            return set((await session.execute(select(PageMetaStaging.upstream_id))).scalars())

    async def count(self) -> int:
        async with self._session() as session:
            return (await session.execute(select(func.count()).select_from(PageMetaStaging))).scalar_one()


def _phase_columns(phase: SyncPhase):
    """返回 (need, done, token, claimed_at) 列。"""
    if phase is SyncPhase.B:
        return DirtyPage.need_phase_b, DirtyPage.done_phase_b, DirtyPage.claim_b_token, DirtyPage.claim_b_at
    if phase is SyncPhase.C:
        return DirtyPage.need_phase_c, DirtyPage.done_phase_c, DirtyPage.claim_c_token, DirtyPage.claim_c_at
    raise ValueError(f"阶段 {phase} 没有工作队列")


class SqlDirtyQueueRepository(_SqlRepository, DirtyQueueRepository):

    async def get(self, page_id: int) -> Optional[DirtyRecord]:
        async with self._session() as session:
            row = await session.get(DirtyPage, page_id)
            return _to_dirty(row) if row else None

    async def mark_dirty(
        self,
        page_id: int,
        reasons: Iterable[DirtyReason],
        need_b: bool = False,
        need_c: bool = False,
        estimated_cost: Optional[int] = None,
    ) -> bool:
        async with self._session() as session:
            row = await session.get(DirtyPage, page_id, with_for_update=True)
            created = row is None
            if created:
                row = DirtyPage(
                    page_id=page_id,
                    need_phase_b=False,
                    need_phase_c=False,
                    done_phase_b=False,
                    done_phase_c=False,
                    reasons=[],
                    estimated_cost=0,
                    blocked=False,
                    detected_at=utcnow(),
                )
                session.add(row)
            if need_b:
                row.need_phase_b, row.done_phase_b = True, False
            if need_c:
                row.need_phase_c, row.done_phase_c = True, False
            merged = list(row.reasons or [])
            for reason in reasons:
                if reason.value not in merged:
                    merged.append(reason.value)
            # 重新赋值列表，保证 JSON 列被识别为已修改
            row.reasons = merged
            if estimated_cost is not None:
                row.estimated_cost = estimated_cost
            return created

    async def claim(
        self,
        phase: SyncPhase,
        limit: int,
        lease_seconds: float,
        now: Optional[datetime] = None,
    ) -> list[Claim]:
        now = now or utcnow()
        expired_before = now - timedelta(seconds=lease_seconds)
        need, done, token_col, at_col = _phase_columns(phase)

        conditions = [
            need.is_(True),
            done.is_(False),
            DirtyPage.blocked.is_(False),
            or_(token_col.is_(None), at_col.is_(None), at_col < expired_before),
        ]
        if phase is SyncPhase.C:
            # Phase C 等待 Phase B 完成
            conditions.append(not_(and_(DirtyPage.need_phase_b.is_(True), DirtyPage.done_phase_b.is_(False))))

        token = uuid.uuid4().hex
        claims = []
        async with self._session() as session:
            stmt = (
                select(DirtyPage.page_id, DirtyPage.estimated_cost)
                .where(*conditions)
                .order_by(DirtyPage.estimated_cost, DirtyPage.page_id)
                .limit(limit)
            )
            candidates = (await session.execute(stmt)).all()
            for page_id, cost in candidates:
                # 逐行条件更新，并发领取时只有一方成功
                result = await session.execute(
                    update(DirtyPage)
                    .where(DirtyPage.page_id == page_id, *conditions)
                    .values({token_col: token, at_col: now})
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claims.append(Claim(page_id=page_id, phase=phase, token=token, estimated_cost=cost))
        return claims

    async def complete(self, phase: SyncPhase, page_id: int, token: str) -> bool:
        need, done, token_col, at_col = _phase_columns(phase)
        async with self._session() as session:
            result = await session.execute(
                update(DirtyPage)
                .where(DirtyPage.page_id == page_id, token_col == token)
                .values({done: True, need: False, token_col: None, at_col: None})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def record_failure(
        self,
        phase: SyncPhase,
        page_id: int,
        token: str,
        error: str,
        permanent: bool = False,
    ) -> None:
        _, _, token_col, at_col = _phase_columns(phase)
        async with self._session() as session:
            stmt = select(DirtyPage).where(DirtyPage.page_id == page_id, token_col == token)
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                return
            reasons = list(row.reasons or [])
            if DirtyReason.PREVIOUSLY_FAILED.value not in reasons:
                reasons.append(DirtyReason.PREVIOUSLY_FAILED.value)
            row.reasons = reasons
            row.last_error = error[:2000]
            if permanent:
                row.blocked = True
            setattr(row, token_col.key, None)
            setattr(row, at_col.key, None)

    async def release(self, phase: SyncPhase, page_id: int, token: str) -> None:
        _, _, token_col, at_col = _phase_columns(phase)
        async with self._session() as session:
            await session.execute(
                update(DirtyPage)
                .where(DirtyPage.page_id == page_id, token_col == token)
                .values({token_col: None, at_col: None})
                .execution_options(synchronize_session=False)
            )

    async def clear_need(self, phase: SyncPhase, page_id: int) -> None:
        need, _, token_col, at_col = _phase_columns(phase)
        async with self._session() as session:
            await session.execute(
                update(DirtyPage)
                .where(DirtyPage.page_id == page_id)
                .values({need: False, token_col: None, at_col: None})
                .execution_options(synchronize_session=False)
            )

    async def unblock(self, page_id: int) -> None:
        async with self._session() as session:
            await session.execute(
                update(DirtyPage)
                .where(DirtyPage.page_id == page_id)
                .values(blocked=False, last_error=None)
                .execution_options(synchronize_session=False)
            )

    async def pending(self, phase: SyncPhase, limit: Optional[int] = None) -> list[DirtyRecord]:
        need, done, _, _ = _phase_columns(phase)
        async with self._session() as session:
            stmt = (
                select(DirtyPage)
                .where(need.is_(True), done.is_(False))
                .order_by(DirtyPage.estimated_cost, DirtyPage.page_id)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [_to_dirty(row) for row in (await session.execute(stmt)).scalars()]

    async def summary(self) -> dict[str, int]:
        async with self._session() as session:
            async def count(*criteria) -> int:
                stmt = select(func.count()).select_from(DirtyPage).where(*criteria)
                return (await session.execute(stmt)).scalar_one()

            return {
                "total": await count(),
                "pending_b": await count(DirtyPage.need_phase_b.is_(True), DirtyPage.done_phase_b.is_(False)),
                "pending_c": await count(DirtyPage.need_phase_c.is_(True), DirtyPage.done_phase_c.is_(False)),
                "blocked": await count(DirtyPage.blocked.is_(True)),
            }


class SqlContentRepository(_SqlRepository, ContentRepository):

    async def commit_deep(self, page_id: int, content: DeepContent, at: datetime) -> DeepCommitResult:
        async with self._session() as session:
            current = await _current_version(session, page_id)
            if current is None:
                raise IntegrityViolation(f"页面 {page_id} 没有当前版本，无法提交正文", page_id=page_id)

            result = DeepCommitResult(version_id=current.id)
            if current.source is None:
                current.source = content.source
                current.text_content = content.text_content
                result.content_filled = content.source is not None
            elif content.source is not None and current.source != content.source:
                successor = _to_version(current).successor(
                    source=content.source, text_content=content.text_content
                )
                opened = await _open_version(session, successor, at)
                result.version_id = opened.id
                result.version_opened = True

            vid = result.version_id
            result.attributions_added = await self._merge_attributions(session, vid, content.attributions)
            result.votes_added = await self._merge_votes(session, vid, content.votes)
            result.revisions_added = await self._merge_revisions(session, vid, content.revisions)
            await session.flush()
            return result

    @staticmethod
    async def _merge_attributions(session: AsyncSession, vid: int, items: list[AttributionRecord]) -> int:
        stmt = select(Attribution.type, Attribution.user_key).where(Attribution.page_version_id == vid)
        keys = {tuple(row) for row in (await session.execute(stmt)).all()}
        added = 0
        for item in items:
            if item.key in keys:
                continue
            keys.add(item.key)
            session.add(Attribution(
                page_version_id=vid,
                type=item.type,
                user_key=item.user_key,
                user_id=item.user_id,
                user_name=item.user_name,
                order=item.order,
                date=item.date,
            ))
            added += 1
        return added

    @staticmethod
    async def _merge_votes(session: AsyncSession, vid: int, items: list[VoteRecord]) -> int:
        stmt = select(Vote.user_id, Vote.anon_key, Vote.timestamp).where(Vote.page_version_id == vid)
        keys = set()
        for user_id, anon_key, timestamp in (await session.execute(stmt)).all():
            keys.add(VoteRecord(direction=0, timestamp=as_utc(timestamp), user_id=user_id, anon_key=anon_key).key)
        added = 0
        for item in items:
            if item.key in keys:
                continue
            keys.add(item.key)
            session.add(Vote(
                page_version_id=vid,
                user_id=item.user_id,
                user_name=item.user_name,
                anon_key=item.anon_key if item.user_id is None else None,
                direction=item.direction,
                timestamp=item.timestamp,
            ))
            added += 1
        return added

    @staticmethod
    async def _merge_revisions(session: AsyncSession, vid: int, items: list[RevisionRecord]) -> int:
        stmt = select(Revision.upstream_id).where(Revision.page_version_id == vid)
        keys = set((await session.execute(stmt)).scalars())
        added = 0
        for item in items:
            if item.key in keys:
                continue
            keys.add(item.key)
            session.add(Revision(
                page_version_id=vid,
                upstream_id=item.upstream_id,
                type=item.type,
                user_id=item.user_id,
                user_name=item.user_name,
                comment=item.comment,
                timestamp=item.timestamp,
            ))
            added += 1
        return added

    async def attributions(self, version_id: int) -> list[AttributionRecord]:
        async with self._session() as session:
            stmt = (
                select(Attribution)
                .where(Attribution.page_version_id == version_id)
                .order_by(Attribution.order, Attribution.id)
            )
            return [
                AttributionRecord(
                    type=row.type, user_id=row.user_id, user_name=row.user_name,
                    order=row.order, date=as_utc(row.date),
                )
                for row in (await session.execute(stmt)).scalars()
            ]

    async def votes(self, version_id: int) -> list[VoteRecord]:
        async with self._session() as session:
            stmt = select(Vote).where(Vote.page_version_id == version_id).order_by(Vote.timestamp, Vote.id)
            return [
                VoteRecord(
                    direction=row.direction, timestamp=as_utc(row.timestamp), user_id=row.user_id,
                    user_name=row.user_name, anon_key=row.anon_key,
                )
                for row in (await session.execute(stmt)).scalars()
            ]

    async def revisions(self, version_id: int) -> list[RevisionRecord]:
        async with self._session() as session:
            stmt = (
                select(Revision)
                .where(Revision.page_version_id == version_id)
                .order_by(Revision.timestamp, Revision.id)
            )
            return [
                RevisionRecord(
                    upstream_id=row.upstream_id, timestamp=as_utc(row.timestamp), type=row.type,
                    user_id=row.user_id, user_name=row.user_name, comment=row.comment,
                )
                for row in (await session.execute(stmt)).scalars()
            ]


class SqlConflictRepository(_SqlRepository, ConflictRepository):

    async def flag(
        self,
        url: str,
        existing_page_id: int,
        existing_upstream_id: int,
        observed_upstream_id: int,
    ) -> bool:
        async with self._session() as session:
            stmt = select(PageConflict.id).where(
                PageConflict.url == url,
                PageConflict.existing_upstream_id == existing_upstream_id,
                PageConflict.observed_upstream_id == observed_upstream_id,
                PageConflict.resolved.is_(False),
            )
            if (await session.execute(stmt)).first() is not None:
                return False
            session.add(PageConflict(
                url=url,
                existing_page_id=existing_page_id,
                existing_upstream_id=existing_upstream_id,
                observed_upstream_id=observed_upstream_id,
                resolved=False,
            ))
            return True

    async def list_open(self) -> list[ConflictRecord]:
        async with self._session() as session:
            stmt = select(PageConflict).where(PageConflict.resolved.is_(False)).order_by(PageConflict.id)
            return [
                ConflictRecord(
                    id=row.id,
                    url=row.url,
                    existing_page_id=row.existing_page_id,
                    existing_upstream_id=row.existing_upstream_id,
                    observed_upstream_id=row.observed_upstream_id,
                    resolved=row.resolved,
                    detected_at=as_utc(row.detected_at),
                )
                for row in (await session.execute(stmt)).scalars()
            ]


def create_sql_store(session_factory: async_sessionmaker[AsyncSession]) -> SyncStore:
    """基于同一会话工厂创建全部 SQL 仓储。"""
    return SyncStore(
        pages=SqlPageRepository(session_factory),
        versions=SqlVersionRepository(session_factory),
        staging=SqlStagingRepository(session_factory),
        dirty=SqlDirtyQueueRepository(session_factory),
        content=SqlContentRepository(session_factory),
        conflicts=SqlConflictRepository(session_factory),
    )
