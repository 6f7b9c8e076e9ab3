"""
Phase B - 详情补全。

对需要 Phase B 的脏页批量拉取最新元数据，
只在实质字段变化时关闭旧版本并开启新版本。
"""
from typing import Optional

from wikisync.core.errors import IntegrityViolation
from wikisync.core.logging import get_logger
from wikisync.models.dirty import DirtyReason, SyncPhase
from wikisync.services.sync.context import ClaimingPhase
from wikisync.services.upstream.batch import Batch, BatchItem
from wikisync.services.upstream.cost import DETAIL_SHAPE
from wikisync.store.records import Claim, PageMeta, PageRecord, VersionRecord, material_key

logger = get_logger(__name__)


def deep_reasons(previous: Optional[VersionRecord], meta: PageMeta, opened: bool = False) -> list[DirtyReason]:
    """
    判断新的元数据是否需要 Phase C 补全正文和子集合。

    投票、修订和归属挂在版本上，opened 表示刚开启了新版本，子集合需要重新合并。
    """
    if previous is None or previous.is_deleted:
        return [DirtyReason.CONTENT_STALE]
    reasons = []
    if previous.vote_count != meta.vote_count:
        reasons.append(DirtyReason.INCOMPLETE_VOTES)
    if previous.revision_count != meta.revision_count:
        reasons.append(DirtyReason.INCOMPLETE_REVISIONS)
    if previous.source is None or opened:
        reasons.append(DirtyReason.CONTENT_STALE)
    return reasons


class DetailHydrator(ClaimingPhase):
    """Phase B 驱动器。"""

    phase = SyncPhase.B

    async def process(self, claims: list[Claim]) -> None:
        ctx = self.ctx
        claims_by_id = {claim.page_id: claim for claim in claims}
        pages: dict[int, PageRecord] = {}
        items = []
        item_cost = ctx.estimator.page_cost(DETAIL_SHAPE)

        for claim in claims:
            page = await ctx.store.pages.get(claim.page_id)
            if page is None:
                await self.fail(claim, "页面记录不存在", permanent=True)
                continue
            pages[page.id] = page
            items.append(BatchItem(key=page.id, url=page.url, cost=item_cost))

        batches = ctx.builder.pack(items, DETAIL_SHAPE)

        async def handle(batch: Batch) -> int:
            result = await ctx.api.fetch_batch(batch)
            applied = 0
            for item in batch.items:
                if item.key in self.handled:
                    continue
                claim = claims_by_id[item.key]
                if item.key in result.errors:
                    await self.fail(claim, result.errors[item.key], permanent=item.key in result.permanent)
                    continue
                await self.apply(claim, pages[item.key], result.pages.get(item.key))
                applied += 1
            return applied

        outcomes = await ctx.scheduler.run(batches, handle)
        await self.settle(outcomes, claims_by_id)

    async def apply(self, claim: Claim, page: PageRecord, meta: Optional[PageMeta]) -> None:
        """提交单个页面: 写版本 -> 标记 Phase C -> 检查点 -> 完成。"""
        store = self.ctx.store
        now = self.ctx.now()
        current = await store.versions.current(page.id)

        if meta is None:
            await self._apply_deleted(claim, page, current)
            return

        try:
            self._check_identity(page, meta)
        except IntegrityViolation as exc:
            await store.conflicts.flag(meta.url, page.id, page.upstream_id, meta.upstream_id)
            await store.dirty.mark_dirty(page.id, [DirtyReason.IDENTITY_CONFLICT])
            self.report.conflicts += 1
            await self.fail(claim, str(exc), permanent=True)
            return

        opened = False
        if current is None or material_key(current) != material_key(meta):
            await store.versions.open_version(VersionRecord.from_meta(page.id, meta, previous=current), now)
            self.report.versions_opened += 1
            opened = True

        reasons = deep_reasons(current, meta, opened)
        if reasons:
            await store.dirty.mark_dirty(page.id, reasons, need_c=True)
            self.report.deep_flagged += 1

        if meta.url != page.url:
            await store.pages.update_url(page.id, meta.url)

        await self.finish(claim, {"upstream_id": meta.upstream_id, "opened": opened})

    async def _apply_deleted(self, claim: Claim, page: PageRecord, current: Optional[VersionRecord]) -> None:
        """上游已不存在: 写入删除版本，撤销 Phase C。"""
        store = self.ctx.store
        if current is not None and not current.is_deleted:
            await store.versions.open_version(current.successor(is_deleted=True), self.ctx.now())
            self.report.versions_opened += 1
            self.report.deleted += 1
            logger.info(f"页面 {page.id} ({page.url}) 已在上游删除")
        await store.dirty.clear_need(SyncPhase.C, page.id)
        await self.finish(claim, {"upstream_id": page.upstream_id, "deleted": True})

    @staticmethod
    def _check_identity(page: PageRecord, meta: PageMeta) -> None:
        if meta.upstream_id != page.upstream_id:
            raise IntegrityViolation(
                f"{page.url} 上游 ID 由 {page.upstream_id} 变为 {meta.upstream_id}，需人工处理",
                page_id=page.id,
            )
