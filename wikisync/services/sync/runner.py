"""
同步运行器，按 A -> B -> C 顺序执行各阶段。
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from wikisync.core.checkpoint import CheckpointStore
from wikisync.core.config import Settings, get_settings
from wikisync.core.logging import get_logger, run_context
from wikisync.models.dirty import DirtyReason
from wikisync.services.scheduler.limiter import TokenBucket
from wikisync.services.scheduler.scheduler import TaskScheduler
from wikisync.services.sync.context import PhaseReport, SyncContext
from wikisync.services.sync.deep import DeepHydrator
from wikisync.services.sync.detail import DetailHydrator
from wikisync.services.sync.scanner import MetadataScanner, ScanReport
from wikisync.services.upstream.batch import BatchBuilder
from wikisync.services.upstream.client import WikiApi
from wikisync.services.upstream.cost import CostEstimator
from wikisync.store.base import SyncStore

logger = get_logger(__name__)

VALID_PHASES = "abc"


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


@dataclass
class RunSummary:
    """一次同步运行的汇总。"""
    run_id: str
    phases: str
    scan: Optional[ScanReport] = None
    detail: Optional[PhaseReport] = None
    deep: Optional[PhaseReport] = None
    pending: dict[str, int] = field(default_factory=dict)
    stopped: bool = False


def build_context(
    store: SyncStore,
    api: WikiApi,
    run_id: str,
    settings: Optional[Settings] = None,
    concurrency: Optional[int] = None,
) -> SyncContext:
    """按配置组装同步上下文。"""
    settings = settings or get_settings()
    limiter = TokenBucket.from_settings(settings.rate_limit)
    return SyncContext(
        store=store,
        api=api,
        scheduler=TaskScheduler.from_settings(limiter, settings.scheduler, concurrency=concurrency),
        checkpoints=CheckpointStore.from_settings(run_id, settings.checkpoint.dir),
        estimator=CostEstimator.from_settings(settings.cost),
        builder=BatchBuilder.from_settings(settings.cost),
        settings=settings.sync,
        lease_seconds=settings.scheduler.claim_lease_seconds,
        max_first=settings.cost.max_first,
    )


class SyncRunner:
    """
    同步运行器。

    各阶段顺序执行，收到停止请求后当前阶段尽快收尾，后续阶段不再开始。
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    @property
    def run_id(self) -> str:
        return self.ctx.checkpoints.run_id

    def stop(self) -> None:
        self.ctx.scheduler.stop()

    async def run(self, phases: str = VALID_PHASES) -> RunSummary:
        with run_context(self.run_id):
            return await self._run(phases.lower())

    async def _run(self, phases: str) -> RunSummary:
        unknown = set(phases) - set(VALID_PHASES)
        if unknown:
            raise ValueError(f"未知阶段: {''.join(sorted(unknown))}")

        summary = RunSummary(run_id=self.run_id, phases=phases)
        logger.info(f"同步开始: run_id={self.run_id}，阶段 {phases.upper()}")

        if "a" in phases and not self.ctx.scheduler.stopped:
            summary.scan = await MetadataScanner(self.ctx).run()
        if "b" in phases and not self.ctx.scheduler.stopped:
            summary.detail = await DetailHydrator(self.ctx).run()
        if "c" in phases and not self.ctx.scheduler.stopped:
            summary.deep = await DeepHydrator(self.ctx).run()

        summary.stopped = self.ctx.scheduler.stopped
        summary.pending = await self.ctx.store.dirty.summary()
        logger.info(
            f"同步结束: 待 Phase B {summary.pending['pending_b']}，待 Phase C {summary.pending['pending_c']}，"
            f"阻塞 {summary.pending['blocked']}" + ("，已提前停止" if summary.stopped else "")
        )
        return summary

    async def seed(self, page_ids: Iterable[int], deep: bool = False) -> int:
        """人工重新检查指定页面，同时解除阻塞。返回处理的页面数。"""
        count = 0
        for page_id in page_ids:
            if await self.ctx.store.pages.get(page_id) is None:
                logger.warning(f"页面 {page_id} 不存在，跳过")
                continue
            await self.ctx.store.dirty.unblock(page_id)
            await self.ctx.store.dirty.mark_dirty(page_id, [DirtyReason.MANUAL], need_b=True, need_c=deep)
            count += 1
        logger.info(f"已手动标记 {count} 个页面" + (" (含 Phase C)" if deep else ""))
        return count
