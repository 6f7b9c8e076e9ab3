"""
Phase C - 深度补全。

对需要 Phase C 的页面抓取正文、归属、全部修订和投票。
首个请求批量别名查询，之后按页面游标续抓；
单个页面的全部请求成功后才一次性提交，部分失败不写入任何数据。
"""
from wikisync.core.errors import IntegrityViolation, PermanentError, UpstreamError
from wikisync.core.logging import get_logger
from wikisync.models.dirty import DirtyReason, SyncPhase
from wikisync.services.sync.context import ClaimingPhase
from wikisync.services.upstream.batch import Batch, BatchItem
from wikisync.services.upstream.client import DeepPage
from wikisync.services.upstream.cost import DEEP_SHAPE, FieldShape
from wikisync.store.records import Claim, PageRecord

logger = get_logger(__name__)


class DeepHydrator(ClaimingPhase):
    """Phase C 驱动器。"""

    phase = SyncPhase.C

    async def process(self, claims: list[Claim]) -> None:
        ctx = self.ctx
        store = ctx.store
        claims_by_id = {claim.page_id: claim for claim in claims}
        pages: dict[int, PageRecord] = {}
        items = []
        default_cost = ctx.estimator.page_cost(DEEP_SHAPE)

        for claim in claims:
            page = await store.pages.get(claim.page_id)
            current = await store.versions.current(claim.page_id)
            if page is None or current is None:
                await self.fail(claim, "页面没有当前版本，需先完成 Phase B", permanent=True)
                continue
            if current.is_deleted:
                # 已删除页面不再需要深度补全
                await store.dirty.clear_need(SyncPhase.C, claim.page_id)
                self.handled.add(claim.page_id)
                self.report.skipped += 1
                continue
            pages[page.id] = page
            items.append(BatchItem(key=page.id, url=page.url, cost=claim.estimated_cost or default_cost))

        batches = ctx.builder.pack(items, DEEP_SHAPE)

        async def handle(batch: Batch) -> int:
            result = await ctx.api.fetch_batch(batch)
            committed = 0
            for item in batch.items:
                if item.key in self.handled:
                    continue
                claim = claims_by_id[item.key]
                if item.key in result.errors:
                    await self.fail(claim, result.errors[item.key], permanent=item.key in result.permanent)
                    continue
                deep_page = result.pages.get(item.key)
                if deep_page is None:
                    await self._vanished(claim, pages[item.key])
                    continue
                if await self.hydrate(claim, pages[item.key], deep_page):
                    committed += 1
            return committed

        outcomes = await ctx.scheduler.run(batches, handle)
        await self.settle(outcomes, claims_by_id)

    async def hydrate(self, claim: Claim, page: PageRecord, deep_page: DeepPage) -> bool:
        """续抓剩余的修订和投票，全部成功后原子提交。"""
        ctx = self.ctx
        requests = 1
        try:
            while not deep_page.complete:
                more = FieldShape(
                    name="continuation",
                    revision_limit=ctx.max_first if deep_page.revision_cursor is not None else 0,
                    vote_limit=ctx.max_first if deep_page.vote_cursor is not None else 0,
                )
                cost = ctx.estimator.page_cost(more)
                found = await ctx.scheduler.call_with_retry(
                    lambda: ctx.api.fetch_continuation(deep_page, ctx.max_first), cost=cost
                )
                requests += 1
                if not found:
                    await self._vanished(claim, page)
                    return False
        except UpstreamError as exc:
            # 任何子请求失败都不提交，页面保持未完成
            await self.fail(claim, f"续抓失败 (已请求 {requests} 次): {exc}", permanent=isinstance(exc, PermanentError))
            return False

        content = deep_page.content
        try:
            result = await ctx.store.content.commit_deep(page.id, content, ctx.now())
        except IntegrityViolation as exc:
            await self.fail(claim, str(exc), permanent=True)
            return False

        self.report.votes_added += result.votes_added
        self.report.revisions_added += result.revisions_added
        self.report.attributions_added += result.attributions_added
        if result.version_opened:
            self.report.versions_opened += 1
        logger.debug(
            f"{page.url}: {len(content.revisions)} 条修订，{len(content.votes)} 条投票 "
            f"({requests} 次请求)，新增投票 {result.votes_added}，新增修订 {result.revisions_added}"
        )
        await self.finish(claim, {
            "version_id": result.version_id,
            "votes": len(content.votes),
            "revisions": len(content.revisions),
        })
        return True

    async def _vanished(self, claim: Claim, page: PageRecord) -> None:
        """抓取过程中页面消失: 交回 Phase B 确认删除。"""
        store = self.ctx.store
        await store.dirty.mark_dirty(page.id, [DirtyReason.DELETION_CHANGED], need_b=True)
        await store.dirty.clear_need(SyncPhase.C, page.id)
        self.handled.add(page.id)
        self.report.skipped += 1
        logger.info(f"页面 {page.id} ({page.url}) 在 Phase C 中未找到，交回 Phase B")
