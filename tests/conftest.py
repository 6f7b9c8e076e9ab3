"""
测试公共夹具。

FakeWikiApi 用内存目录模拟上游，支持按 URL 注入单页错误、
整批异常和续抓失败，不发送任何网络请求。
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from wikisync.core.checkpoint import CheckpointStore
from wikisync.core.config import SyncSettings, default_cost_weights
from wikisync.core.database import make_session_factory
from wikisync.core.errors import TransientError
from wikisync.models import Base
from wikisync.services.scheduler.limiter import TokenBucket
from wikisync.services.scheduler.scheduler import TaskScheduler
from wikisync.services.sync.context import SyncContext
from wikisync.services.sync.runner import SyncRunner
from wikisync.services.upstream.batch import Batch, BatchBuilder
from wikisync.services.upstream.client import BatchResult, DeepPage, ScanPage
from wikisync.services.upstream.cost import CostEstimator
from wikisync.store import create_memory_store
from wikisync.store.records import (
    AttributionRecord,
    DeepContent,
    PageMeta,
    RevisionRecord,
    VoteRecord,
)
from wikisync.store.sql import create_sql_store

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def no_sleep(_seconds: float) -> None:
    return None


class FakeClock:
    """可手动推进的单调时钟，sleep 直接推进时间。"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StepClock:
    """同步流程使用的 UTC 时钟，每次调用前进一秒。"""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@dataclass
class CatalogPage:
    """上游目录中的一个页面。"""
    url: str
    upstream_id: int
    title: str = "页面"
    rating: int = 0
    vote_count: int = 0
    revision_count: int = 0
    comment_count: int = 0
    tags: list[str] = field(default_factory=list)
    category: str = "_default"
    source: Optional[str] = None
    votes: list[VoteRecord] = field(default_factory=list)
    revisions: list[RevisionRecord] = field(default_factory=list)
    attributions: list[AttributionRecord] = field(default_factory=list)

    def meta(self) -> PageMeta:
        return PageMeta(
            url=self.url,
            upstream_id=self.upstream_id,
            title=self.title,
            rating=self.rating,
            vote_count=self.vote_count,
            revision_count=self.revision_count,
            comment_count=self.comment_count,
            tags=list(self.tags),
            category=self.category,
        )


def make_votes(count: int, start: int = 1) -> list[VoteRecord]:
    return [
        VoteRecord(direction=1, timestamp=BASE_TIME + timedelta(minutes=i), user_id=i, user_name=f"user{i}")
        for i in range(start, start + count)
    ]


def make_revisions(count: int, start: int = 1) -> list[RevisionRecord]:
    return [
        RevisionRecord(upstream_id=i, timestamp=BASE_TIME + timedelta(hours=i), type="SOURCE_CHANGED", user_id=1)
        for i in range(start, start + count)
    ]


class FakeWikiApi:
    """
    内存版上游接口，方法签名与 WikiApi 一致。

    Attributes:
        alias_errors: 这些 URL 在批量查询中返回单个别名错误
        malformed: 这些 URL 返回无法解析的节点 (永久错误)
        batch_errors: 依次抛出的整批异常
        continuation_errors: 续抓时抛出的异常次数 (TransientError)
    """

    def __init__(self, pages: Optional[list[CatalogPage]] = None):
        self.pages: dict[str, CatalogPage] = {}
        for page in pages or []:
            self.add(page)
        self.alias_errors: set[str] = set()
        self.malformed: set[str] = set()
        self.batch_errors: list[Exception] = []
        self.continuation_errors = 0
        self.scan_calls = 0
        self.batch_calls: list[Batch] = []
        self.continuation_calls = 0

    def add(self, page: CatalogPage) -> CatalogPage:
        self.pages[page.url] = page
        return page

    def remove(self, url: str) -> None:
        self.pages.pop(url)

    async def count_pages(self) -> int:
        return len(self.pages)

    async def scan_pages(self, after: Optional[str], first: Optional[int] = None) -> ScanPage:
        self.scan_calls += 1
        urls = sorted(self.pages)
        offset = int(after) if after else 0
        chunk = urls[offset:offset + (first or 100)]
        end = offset + len(chunk)
        return ScanPage(
            items=[self.pages[url].meta() for url in chunk],
            end_cursor=str(end) if chunk else after,
            has_next=end < len(urls),
        )

    async def fetch_batch(self, batch: Batch) -> BatchResult:
        self.batch_calls.append(batch)
        if self.batch_errors:
            raise self.batch_errors.pop(0)
        deep = bool(batch.shape.revision_limit or batch.shape.vote_limit or batch.shape.source)
        result = BatchResult()
        for item in batch.items:
            if item.url in self.alias_errors:
                result.errors[item.key] = f"无法解析 {item.url}"
                continue
            if item.url in self.malformed:
                result.reject(item.key, f"{item.url} 缺少 wikidotId")
                continue
            page = self.pages.get(item.url)
            if page is None:
                result.pages[item.key] = None
            elif deep:
                result.pages[item.key] = self._deep(page, batch.shape.revision_limit, batch.shape.vote_limit)
            else:
                result.pages[item.key] = page.meta()
        return result

    @staticmethod
    def _deep(page: CatalogPage, revision_limit: int, vote_limit: int) -> DeepPage:
        content = DeepContent(
            url=page.url,
            source=page.source,
            text_content=page.source,
            attributions=list(page.attributions),
            votes=list(page.votes[:vote_limit]),
            revisions=list(page.revisions[:revision_limit]),
        )
        return DeepPage(
            meta=page.meta(),
            content=content,
            revision_cursor=str(revision_limit) if len(page.revisions) > revision_limit else None,
            vote_cursor=str(vote_limit) if len(page.votes) > vote_limit else None,
        )

    async def fetch_continuation(self, page: DeepPage, first: int) -> bool:
        self.continuation_calls += 1
        if self.continuation_errors:
            self.continuation_errors -= 1
            raise TransientError("续抓超时")
        source = self.pages.get(page.content.url)
        if source is None:
            return False
        if page.revision_cursor is not None:
            offset = int(page.revision_cursor)
            page.content.revisions.extend(source.revisions[offset:offset + first])
            page.revision_cursor = str(offset + first) if offset + first < len(source.revisions) else None
        if page.vote_cursor is not None:
            offset = int(page.vote_cursor)
            page.content.votes.extend(source.votes[offset:offset + first])
            page.vote_cursor = str(offset + first) if offset + first < len(source.votes) else None
        return True


def make_context(
    store,
    api,
    checkpoint_dir,
    run_id: str = "test-run",
    scan_page_size: int = 100,
    claim_batch_size: int = 500,
    deep_revision_jump: Optional[int] = None,
    soft_limit: int = 100_000,
    max_items: int = 15,
    simple_page_threshold: int = 2000,
    max_retries: int = 2,
    max_first: int = 100,
    concurrency: int = 2,
    clock=None,
) -> SyncContext:
    """不依赖配置文件组装同步上下文。"""
    limiter = TokenBucket(capacity=1_000_000, refill_per_second=1_000_000, sleep=no_sleep)
    return SyncContext(
        store=store,
        api=api,
        scheduler=TaskScheduler(limiter, concurrency=concurrency, max_retries=max_retries, backoff_base=0.0, sleep=no_sleep),
        checkpoints=CheckpointStore(str(checkpoint_dir), run_id),
        estimator=CostEstimator(default_cost_weights(), min_factor=5, simple_page_threshold=simple_page_threshold),
        builder=BatchBuilder(soft_limit=soft_limit, max_items=max_items),
        settings=SyncSettings(
            scan_page_size=scan_page_size,
            claim_batch_size=claim_batch_size,
            deep_revision_jump=deep_revision_jump,
        ),
        max_first=max_first,
        clock=clock or StepClock(),
    )


@pytest.fixture
def store():
    """内存仓储。"""
    return create_memory_store()


@pytest.fixture
def fake_api():
    return FakeWikiApi()


async def open_sqlite_store():
    """创建基于 aiosqlite 内存数据库的 SQL 仓储，返回 (仓储, 引擎)。"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return create_sql_store(make_session_factory(engine)), engine


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request):
    """内存仓储和 SQL 仓储各跑一遍。"""
    if request.param == "memory":
        yield create_memory_store()
        return
    sql_store, engine = await open_sqlite_store()
    yield sql_store
    await engine.dispose()


class Harness:
    """在同一仓储和上游上连续执行多次同步，每次使用新的运行 ID。"""

    def __init__(self, store, api, checkpoint_dir):
        self.store = store
        self.api = api
        self.checkpoint_dir = checkpoint_dir
        self.clock = StepClock()
        self.runs = 0

    def context(self, run_id: Optional[str] = None, **kwargs) -> SyncContext:
        if run_id is None:
            self.runs += 1
            run_id = f"run-{self.runs}"
        return make_context(self.store, self.api, self.checkpoint_dir, run_id=run_id, clock=self.clock, **kwargs)

    async def run(self, phases: str = "abc", **kwargs):
        return await SyncRunner(self.context(**kwargs)).run(phases)

    async def page(self, url: str):
        return await self.store.pages.get_by_url(url)


@pytest.fixture
def harness(store, fake_api, tmp_path):
    return Harness(store, fake_api, tmp_path / "checkpoints")
