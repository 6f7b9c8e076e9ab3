"""
有界并发任务调度器。

固定数量的 worker 从 asyncio.Queue 中领取批次，
每个批次先向令牌桶申请点数，再调用处理函数。
"""
import asyncio
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from wikisync.core.config import SchedulerSettings, get_settings
from wikisync.core.errors import PermanentError, RateLimitedError, TransientError
from wikisync.core.logging import get_logger
from wikisync.services.scheduler.limiter import TokenBucket
from wikisync.services.upstream.batch import Batch

logger = get_logger(__name__)

T = TypeVar("T")
BatchHandler = Callable[[Batch], Awaitable[Any]]


class BatchStatus(PyEnum):
    """批次最终状态。"""
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class BatchOutcome:
    """单个批次的执行结果。"""
    batch: Batch
    status: BatchStatus
    attempts: int = 0
    result: Any = None
    error: Optional[BaseException] = None
    permanent: bool = False


@dataclass
class _Job:
    position: int
    batch: Batch
    attempts: int = 0
    retries: int = 0


class TaskScheduler:
    """
    批次调度器。

    错误处理策略:
    - RateLimitedError: 令牌桶暂停回填，批次重新入队，不消耗重试次数
    - TransientError: 指数退避后重新入队，超过 max_retries 后标记失败
    - PermanentError: 直接标记失败
    - 其他异常: 视为流程级故障，停止调度并在结束后抛出
    """

    def __init__(
        self,
        limiter: TokenBucket,
        concurrency: int = 4,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency 必须为正数")
        self.limiter = limiter
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        limiter: TokenBucket,
        settings: Optional[SchedulerSettings] = None,
        concurrency: Optional[int] = None,
    ) -> "TaskScheduler":
        settings = settings or get_settings().scheduler
        return cls(
            limiter=limiter,
            concurrency=concurrency or settings.concurrency,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
        )

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """请求停止: 执行中的批次继续完成，未开始的批次取消。"""
        if not self._stop.is_set():
            logger.info("收到停止请求，等待执行中的批次完成")
        self._stop.set()

    def backoff(self, retry: int) -> float:
        return min(self.backoff_base * (2 ** (retry - 1)), self.backoff_max)

    async def call_with_retry(self, func: Callable[[], Awaitable[T]], cost: float) -> T:
        """
        对单个请求应用同样的限流与重试策略。

        超过重试次数的 TransientError 以及 PermanentError 原样抛出。
        """
        retries = 0
        while True:
            await self.limiter.acquire(cost)
            try:
                return await func()
            except RateLimitedError as exc:
                self.limiter.penalize(exc.retry_after)
            except TransientError as exc:
                retries += 1
                if retries > self.max_retries:
                    raise
                delay = self.backoff(retries)
                logger.warning(f"暂时性错误，{delay:.1f}s 后第 {retries} 次重试: {exc}")
                await self._sleep(delay)

    async def run(self, batches: Sequence[Batch], handler: BatchHandler) -> list[BatchOutcome]:
        """执行全部批次，返回与输入顺序一致的结果。"""
        queue: asyncio.Queue[_Job] = asyncio.Queue()
        for position, batch in enumerate(batches):
            queue.put_nowait(_Job(position=position, batch=batch))

        outcomes: dict[int, BatchOutcome] = {}
        fatal: list[BaseException] = []

        async def worker(worker_id: int) -> None:
            while True:
                job = await queue.get()
                try:
                    await self._process(job, handler, queue, outcomes, fatal)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker(i)) for i in range(self.concurrency)]
        try:
            await queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if fatal:
            raise fatal[0]

        results = [outcomes[i] for i in range(len(batches))]
        failed = sum(1 for o in results if o.status is BatchStatus.FAILED)
        cancelled = sum(1 for o in results if o.status is BatchStatus.CANCELLED)
        logger.info(f"调度完成: {len(results)} 批，失败 {failed}，取消 {cancelled}")
        return results

    async def _process(
        self,
        job: _Job,
        handler: BatchHandler,
        queue: asyncio.Queue,
        outcomes: dict[int, BatchOutcome],
        fatal: list[BaseException],
    ) -> None:
        if self._stop.is_set():
            outcomes[job.position] = BatchOutcome(job.batch, BatchStatus.CANCELLED, job.attempts)
            return

        await self.limiter.acquire(job.batch.cost)
        if self._stop.is_set():
            outcomes[job.position] = BatchOutcome(job.batch, BatchStatus.CANCELLED, job.attempts)
            return

        job.attempts += 1
        try:
            result = await handler(job.batch)
        except RateLimitedError as exc:
            self.limiter.penalize(exc.retry_after)
            queue.put_nowait(job)
        except TransientError as exc:
            job.retries += 1
            if job.retries > self.max_retries:
                logger.error(f"批次 {job.batch.index} 重试 {self.max_retries} 次后仍失败: {exc}")
                outcomes[job.position] = BatchOutcome(job.batch, BatchStatus.FAILED, job.attempts, error=exc)
                return
            delay = self.backoff(job.retries)
            logger.warning(f"批次 {job.batch.index} 暂时性错误，{delay:.1f}s 后重试: {exc}")
            await self._sleep(delay)
            # 在 task_done 之前重新入队，队列不会提前清空
            queue.put_nowait(job)
        except PermanentError as exc:
            logger.error(f"批次 {job.batch.index} 永久失败: {exc}")
            outcomes[job.position] = BatchOutcome(
                job.batch, BatchStatus.FAILED, job.attempts, error=exc, permanent=True
            )
        except Exception as exc:
            logger.exception(f"批次 {job.batch.index} 处理时发生未预期错误，停止调度")
            fatal.append(exc)
            self._stop.set()
            outcomes[job.position] = BatchOutcome(job.batch, BatchStatus.FAILED, job.attempts, error=exc)
        else:
            outcomes[job.position] = BatchOutcome(job.batch, BatchStatus.SUCCEEDED, job.attempts, result=result)
