"""
同步流程的共享上下文与阶段基类。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from wikisync.core.checkpoint import CheckpointStore
from wikisync.core.config import SyncSettings
from wikisync.core.logging import get_logger
from wikisync.models.dirty import SyncPhase
from wikisync.services.scheduler.scheduler import BatchOutcome, BatchStatus, TaskScheduler
from wikisync.services.upstream.batch import BatchBuilder
from wikisync.services.upstream.client import WikiApi
from wikisync.services.upstream.cost import CostEstimator
from wikisync.store.base import SyncStore
from wikisync.store.records import Claim, utcnow

logger = get_logger(__name__)


@dataclass
class SyncContext:
    """三个阶段共用的依赖。"""
    store: SyncStore
    api: WikiApi
    scheduler: TaskScheduler
    checkpoints: CheckpointStore
    estimator: CostEstimator
    builder: BatchBuilder
    settings: SyncSettings = field(default_factory=SyncSettings)
    lease_seconds: float = 300
    max_first: int = 100
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()


@dataclass
class PhaseReport:
    """Phase B / Phase C 的运行统计。"""
    phase: SyncPhase
    claimed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    versions_opened: int = 0
    deleted: int = 0
    conflicts: int = 0
    deep_flagged: int = 0
    votes_added: int = 0
    revisions_added: int = 0
    attributions_added: int = 0

    def __str__(self) -> str:
        return (
            f"Phase {self.phase.value.upper()}: 领取 {self.claimed}，成功 {self.succeeded}，"
            f"跳过 {self.skipped}，失败 {self.failed}，取消 {self.cancelled}，新版本 {self.versions_opened}"
        )


class ClaimingPhase:
    """
    基于脏页队列的阶段驱动器。

    循环领取租约 -> 跳过已写检查点的行 -> 打包批次交给调度器，
    直到队列中没有本轮未尝试过的行或收到停止请求。
    """

    phase: SyncPhase

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx
        self.report = PhaseReport(phase=self.phase)
        # 本轮已处理 (成功、失败或跳过) 的 page_id
        self.handled: set[int] = set()
        self._attempted: set[int] = set()

    async def run(self) -> PhaseReport:
        ctx = self.ctx
        phase_key = self.phase.value
        processed = await ctx.checkpoints.load_processed(phase_key)
        if processed:
            logger.info(f"Phase {phase_key.upper()} 从检查点恢复，已完成 {len(processed)} 个页面")

        while not ctx.scheduler.stopped:
            limit = ctx.settings.claim_batch_size + len(self._attempted)
            claims = await ctx.store.dirty.claim(self.phase, limit, ctx.lease_seconds, now=ctx.now())
            fresh = []
            for claim in claims:
                if claim.page_id in self._attempted:
                    # 本轮失败过的行留给下一轮
                    await ctx.store.dirty.release(self.phase, claim.page_id, claim.token)
                else:
                    fresh.append(claim)
            if not fresh:
                break
            for claim in fresh[ctx.settings.claim_batch_size:]:
                await ctx.store.dirty.release(self.phase, claim.page_id, claim.token)
            fresh = fresh[:ctx.settings.claim_batch_size]
            self._attempted.update(claim.page_id for claim in fresh)
            self.report.claimed += len(fresh)

            pending = []
            for claim in fresh:
                if str(claim.page_id) in processed:
                    # 上次运行已提交，仅补写完成标记
                    await ctx.store.dirty.complete(self.phase, claim.page_id, claim.token)
                    self.handled.add(claim.page_id)
                    self.report.skipped += 1
                else:
                    pending.append(claim)

            if pending:
                await self.process(pending)

        logger.info(str(self.report))
        return self.report

    async def process(self, claims: list[Claim]) -> None:
        raise NotImplementedError

    async def finish(self, claim: Claim, record: dict) -> None:
        """写检查点并完成租约。"""
        await self.ctx.checkpoints.append(self.phase.value, {"id": str(claim.page_id), **record})
        await self.ctx.store.dirty.complete(self.phase, claim.page_id, claim.token)
        self.handled.add(claim.page_id)
        self.report.succeeded += 1

    async def fail(self, claim: Claim, error: str, permanent: bool = False) -> None:
        await self.ctx.store.dirty.record_failure(self.phase, claim.page_id, claim.token, error, permanent=permanent)
        self.handled.add(claim.page_id)
        self.report.failed += 1
        logger.warning(f"Phase {self.phase.value.upper()} 页面 {claim.page_id} 失败: {error}")

    async def settle(self, outcomes: list[BatchOutcome], claims_by_id: dict[int, Claim]) -> None:
        """处理失败或取消的批次中尚未处理的页面。"""
        for outcome in outcomes:
            if outcome.status is BatchStatus.SUCCEEDED:
                continue
            for key in outcome.batch.keys:
                if key in self.handled:
                    continue
                claim = claims_by_id[key]
                if outcome.status is BatchStatus.CANCELLED:
                    await self.ctx.store.dirty.release(self.phase, key, claim.token)
                    self.report.cancelled += 1
                else:
                    await self.fail(claim, str(outcome.error), permanent=outcome.permanent)
