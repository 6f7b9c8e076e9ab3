"""
令牌桶限流器。

容量为上游的点数预算，按 预算 / 窗口 的速率匀速回填。
等待通过 asyncio 挂起，不阻塞线程；asyncio.Lock 保证按到达顺序放行。
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

from wikisync.core.config import RateLimitSettings, get_settings
from wikisync.core.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """
    异步令牌桶。

    Args:
        capacity: 桶容量 (点数)
        refill_per_second: 每秒回填点数
        clock: 单调时钟，测试时可注入
        sleep: 异步等待函数，测试时可注入
    """

    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("capacity 和 refill_per_second 必须为正数")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._paused_until = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[RateLimitSettings] = None, **kwargs) -> "TokenBucket":
        settings = settings or get_settings().rate_limit
        budget = settings.require("budget_points")
        window = settings.require("budget_window_seconds")
        return cls(capacity=budget, refill_per_second=budget / window, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        start = max(self._updated, self._paused_until)
        if now > start:
            self._tokens = min(self.capacity, self._tokens + (now - start) * self.refill_per_second)
        self._updated = max(now, self._updated)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, cost: float) -> None:
        """扣除 cost 点，不足时挂起等待。超过容量的请求按容量扣除。"""
        cost = min(max(float(cost), 0.0), self.capacity)
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= cost:
                    self._tokens -= cost
                    return
                pause = max(self._paused_until - self._clock(), 0.0)
                wait = pause + (cost - self._tokens) / self.refill_per_second
                logger.debug(f"令牌不足 (剩余 {self._tokens:.0f}/{cost:.0f})，等待 {wait:.1f}s")
                await self._sleep(wait)

    def penalize(self, retry_after: float) -> None:
        """上游限流: 清空令牌并暂停回填 retry_after 秒。"""
        self._refill()
        self._tokens = 0.0
        self._paused_until = max(self._paused_until, self._clock() + max(retry_after, 0.0))
        logger.warning(f"上游限流，暂停 {retry_after:.0f}s")
