"""
Phase A - 元数据扫描。

分页拉取站点全部页面的轻量元数据写入暂存表，
再与当前版本逐行比较，生成脏页工作项。
"""
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional

from wikisync.core.errors import UpstreamError
from wikisync.core.logging import get_logger
from wikisync.models.dirty import DirtyReason
from wikisync.services.sync.context import SyncContext
from wikisync.services.upstream.cost import DEEP_SHAPE, META_SHAPE
from wikisync.store.records import PageMeta, StagingRecord, VersionRecord

logger = get_logger(__name__)

PHASE_KEY = "a"


class ScanState(PyEnum):
    """扫描状态机。"""
    IDLE = "IDLE"
    PAGINATING = "PAGINATING"
    DIFFING = "DIFFING"
    DONE = "DONE"


@dataclass
class ScanReport:
    """Phase A 运行统计。"""
    total: Optional[int] = None
    scanned: int = 0
    requests: int = 0
    dirty_created: int = 0
    dirty_updated: int = 0
    need_b: int = 0
    need_c: int = 0
    conflicts: int = 0
    unseen: int = 0
    url_changes: int = 0
    resumed: bool = False
    complete: bool = False

    def __str__(self) -> str:
        return (
            f"Phase A: 扫描 {self.scanned} 页 ({self.requests} 次请求)，新建脏页 {self.dirty_created}，"
            f"更新 {self.dirty_updated}，需 B {self.need_b}，需 C {self.need_c}，"
            f"冲突 {self.conflicts}，未出现 {self.unseen}"
        )


def diff_reasons(current: Optional[VersionRecord], meta: PageMeta) -> list[DirtyReason]:
    """比较当前版本与扫描结果，返回变化原因。"""
    if current is None:
        return [DirtyReason.NEW_PAGE]

    reasons = []
    if current.title != meta.title:
        reasons.append(DirtyReason.TITLE_CHANGED)
    if current.rating != meta.rating:
        reasons.append(DirtyReason.RATING_CHANGED)
    if current.vote_count != meta.vote_count:
        reasons.append(DirtyReason.VOTE_COUNT_CHANGED)
    if current.revision_count != meta.revision_count:
        reasons.append(DirtyReason.REVISION_COUNT_CHANGED)
    if set(current.tags or []) != set(meta.tags or []):
        reasons.append(DirtyReason.TAGS_CHANGED)
    if current.category != meta.category:
        reasons.append(DirtyReason.CATEGORY_CHANGED)
    if bool(current.is_deleted) != bool(meta.is_deleted):
        reasons.append(DirtyReason.DELETION_CHANGED)
    return reasons


class MetadataScanner:
    """
    Phase A 驱动器。

    全新运行先清空暂存表；同一 run_id 续跑时从最后一个检查点游标继续，
    已完成的扫描直接跳过。只有完整扫描后才会把未出现的页面标记为待确认删除。
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx
        self.state = ScanState.IDLE
        self.report = ScanReport()

    async def run(self) -> ScanReport:
        ctx = self.ctx
        records = await ctx.checkpoints.load_records(PHASE_KEY)
        kinds = {record.get("kind") for record in records}

        if "complete" in kinds:
            logger.info("Phase A 在本次运行中已完成，跳过")
            self.report.resumed = True
            self.report.complete = True
            self.state = ScanState.DONE
            return self.report

        cursor: Optional[str] = None
        cursors = [record for record in records if record.get("kind") == "cursor"]
        if records:
            self.report.resumed = True
            if cursors:
                cursor = cursors[-1].get("cursor")
                self.report.scanned = sum(int(record.get("count", 0)) for record in cursors)
            logger.info(f"Phase A 从检查点恢复，游标 {cursor}，已扫描 {self.report.scanned} 页")
        else:
            await ctx.store.staging.clear()
            try:
                self.report.total = await ctx.scheduler.call_with_retry(ctx.api.count_pages, cost=1)
                logger.info(f"上游共有 {self.report.total} 个页面")
            except UpstreamError as exc:
                # 总数只用于进度显示
                logger.warning(f"获取页面总数失败: {exc}")

        if "paginated" not in kinds:
            finished = await self._paginate(cursor, len(cursors))
            if not finished:
                logger.warning(f"Phase A 在分页阶段停止，已扫描 {self.report.scanned} 页")
                return self.report
            await ctx.checkpoints.append(PHASE_KEY, {"id": "paginated", "kind": "paginated"})

        await self._diff_all()
        if ctx.scheduler.stopped:
            logger.warning("Phase A 在比较阶段停止")
            return self.report

        await self._mark_unseen()
        await ctx.checkpoints.append(PHASE_KEY, {"id": "complete", "kind": "complete"})
        self.report.complete = True
        self.state = ScanState.DONE
        logger.info(str(self.report))
        return self.report

    async def _paginate(self, cursor: Optional[str], sequence: int) -> bool:
        """分页写入暂存表，返回是否扫描到最后一页。"""
        ctx = self.ctx
        self.state = ScanState.PAGINATING
        page_size = ctx.settings.scan_page_size
        request_cost = ctx.estimator.page_cost(META_SHAPE) * page_size

        while not ctx.scheduler.stopped:
            page = await ctx.scheduler.call_with_retry(
                lambda: ctx.api.scan_pages(cursor, page_size), cost=request_cost
            )
            self.report.requests += 1
            rows = [
                StagingRecord(
                    **vars(meta),
                    estimated_cost=ctx.estimator.page_cost(DEEP_SHAPE, meta.revision_count, meta.vote_count),
                )
                for meta in page.items
            ]
            if rows:
                await ctx.store.staging.upsert_many(rows)
            self.report.scanned += len(rows)

            sequence += 1
            if page.end_cursor:
                cursor = page.end_cursor
            await ctx.checkpoints.append(PHASE_KEY, {
                "id": f"cursor:{sequence}",
                "kind": "cursor",
                "cursor": cursor,
                "count": len(rows),
            })
            if self.report.requests % 50 == 0:
                logger.info(f"Phase A 已扫描 {self.report.scanned}/{self.report.total or '?'} 页")
            if not page.has_next:
                return True
        return False

    async def _diff_all(self) -> None:
        ctx = self.ctx
        self.state = ScanState.DIFFING
        after_url: Optional[str] = None
        while not ctx.scheduler.stopped:
            rows = await ctx.store.staging.list_batch(after_url, ctx.settings.scan_page_size)
            if not rows:
                break
            for row in rows:
                await self._diff_row(row)
            after_url = rows[-1].url

    async def _diff_row(self, row: StagingRecord) -> None:
        store = self.ctx.store
        page = await store.pages.get_by_upstream_id(row.upstream_id)
        current: Optional[VersionRecord] = None

        if page is None:
            holder = await store.pages.get_by_url(row.url)
            if holder is not None:
                # 同一 URL 出现了新的上游 ID，登记冲突等待人工处理
                if await store.conflicts.flag(row.url, holder.id, holder.upstream_id, row.upstream_id):
                    logger.warning(
                        f"身份冲突: {row.url} 原上游 ID {holder.upstream_id}，现为 {row.upstream_id}"
                    )
                self.report.conflicts += 1
                return
            page = await store.pages.create(row.upstream_id, row.url)
        else:
            if page.url != row.url:
                logger.info(f"页面 {page.id} URL 变更: {page.url} -> {row.url}")
                await store.pages.update_url(page.id, row.url)
                self.report.url_changes += 1
            current = await store.versions.current(page.id)

        reasons = diff_reasons(current, row)
        if not reasons:
            return

        need_c = self._needs_deep(current, row)
        created = await store.dirty.mark_dirty(
            page.id, reasons, need_b=True, need_c=need_c, estimated_cost=row.estimated_cost
        )
        if created:
            self.report.dirty_created += 1
        else:
            self.report.dirty_updated += 1
        self.report.need_b += 1
        if need_c:
            self.report.need_c += 1

    def _needs_deep(self, current: Optional[VersionRecord], row: StagingRecord) -> bool:
        """
        判断是否直接标记 Phase C。

        修订数跳变超过阈值，或计数变化且页面成本超过简单页面阈值时，
        不等 Phase B 判断，直接排入深度抓取。
        """
        if current is None:
            return False
        jump = self.ctx.settings.deep_revision_jump
        revision_delta = (row.revision_count or 0) - (current.revision_count or 0)
        if jump is not None and revision_delta >= jump:
            return True
        counts_changed = (
            current.vote_count != row.vote_count or current.revision_count != row.revision_count
        )
        return counts_changed and not self.ctx.estimator.is_simple(row.estimated_cost)

    async def _mark_unseen(self) -> None:
        """完整扫描后，未出现的现存页面交给 Phase B 确认删除。"""
        store = self.ctx.store
        seen = await store.staging.upstream_ids()
        for version in await store.versions.list_current():
            if version.is_deleted or version.upstream_id in seen:
                continue
            await store.dirty.mark_dirty(version.page_id, [DirtyReason.DELETION_CHANGED], need_b=True)
            self.report.unseen += 1
        if self.report.unseen:
            logger.info(f"{self.report.unseen} 个页面未出现在本次扫描中，待 Phase B 确认")
