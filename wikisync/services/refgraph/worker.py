"""
引用图计算的线程池。

主协程从存储读取已提交的当前版本源码，分块交给线程池中的 worker；
worker 之间不共享可变状态，只通过消息 {"ok": True, "edges": [...]}
或 {"ok": False, "error": "..."} 返回结果。
"""
import asyncio
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from wikisync.core.config import RefGraphSettings, get_settings
from wikisync.core.logging import get_logger
from wikisync.services.refgraph.extractor import DEFAULT_SITE_DOMAIN, extract_references
from wikisync.store.base import VersionRepository

logger = get_logger(__name__)


def aggregate_references(task: dict[str, Any]) -> dict[str, Any]:
    """
    worker 入口: 按 (源页面, 目标路径) 汇总引用权重。

    Args:
        task: {"pageIds": [...], "sources": {page_id: source}, "siteDomain": str}

    Returns:
        {"ok": True, "edges": [{"sourcePageId", "targetPath", "weight"}]}
        或 {"ok": False, "error": 错误信息}，不会抛出异常
    """
    try:
        page_ids = [pid for pid in task.get("pageIds") or [] if isinstance(pid, int) and pid > 0]
        sources = task.get("sources") or {}
        site_domain = task.get("siteDomain") or DEFAULT_SITE_DOMAIN

        edges = []
        for page_id in page_ids:
            weights: Counter = Counter()
            for ref in extract_references(sources.get(page_id), site_domain):
                weights[ref.target_path] += ref.occurrence
            edges.extend(
                {"sourcePageId": page_id, "targetPath": path, "weight": weight}
                for path, weight in sorted(weights.items())
                if weight > 0
            )
        return {"ok": True, "edges": edges}
    except Exception as exc:
        # 错误通过消息返回给主协程
        return {"ok": False, "error": f"{type(exc).__name__}: {exc}"}


@dataclass(frozen=True)
class ReferenceEdge:
    source_page_id: int
    target_path: str
    weight: int


@dataclass
class ReferenceGraphResult:
    edges: list[ReferenceEdge] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ReferenceGraphPool:
    """引用图计算池。"""

    def __init__(
        self,
        versions: VersionRepository,
        workers: int = 2,
        batch_size: int = 200,
        site_domain: str = DEFAULT_SITE_DOMAIN,
    ):
        if workers <= 0 or batch_size <= 0:
            raise ValueError("workers 和 batch_size 必须为正数")
        self.versions = versions
        self.workers = workers
        self.batch_size = batch_size
        self.site_domain = site_domain

    @classmethod
    def from_settings(cls, versions: VersionRepository, settings: Optional[RefGraphSettings] = None) -> "ReferenceGraphPool":
        settings = settings or get_settings().refgraph
        return cls(
            versions=versions,
            workers=settings.workers,
            batch_size=settings.batch_size,
            site_domain=settings.site_domain,
        )

    async def compute(self, page_ids: Optional[Iterable[int]] = None) -> ReferenceGraphResult:
        """计算指定页面 (默认全部) 的出链。"""
        sources = await self.versions.current_sources(page_ids)
        ids = sorted(sources)
        chunks = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        logger.info(f"引用图: {len(ids)} 个页面，{len(chunks)} 个任务，{self.workers} 个 worker")

        result = ReferenceGraphResult()
        if not chunks:
            return result

        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="refgraph") as pool:
            futures = [
                loop.run_in_executor(pool, aggregate_references, {
                    "pageIds": chunk,
                    "sources": {pid: sources[pid] for pid in chunk},
                    "siteDomain": self.site_domain,
                })
                for chunk in chunks
            ]
            messages = await asyncio.gather(*futures)

        for message in messages:
            if message.get("ok"):
                result.edges.extend(
                    ReferenceEdge(edge["sourcePageId"], edge["targetPath"], int(edge["weight"]))
                    for edge in message.get("edges", [])
                )
            else:
                logger.error(f"引用图任务失败: {message.get('error')}")
                result.errors.append(str(message.get("error")))

        logger.info(f"引用图完成: {len(result.edges)} 条边，{len(result.errors)} 个任务失败")
        return result
