"""
批量查询打包。

把多个页面查询按成本贪心打包为若干个别名查询，
每批不超过软点数上限和条目上限。
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from wikisync.core.config import CostSettings, get_settings
from wikisync.core.logging import get_logger
from wikisync.services.upstream.cost import FieldShape
from wikisync.services.upstream.queries import alias_for, build_alias_query

logger = get_logger(__name__)


@dataclass(frozen=True)
class BatchItem:
    """待打包的页面。key 通常为本地 page_id。"""
    key: int
    url: str
    cost: int


@dataclass
class Batch:
    """一次别名查询包含的页面。"""
    index: int
    shape: FieldShape
    items: list[BatchItem] = field(default_factory=list)

    @property
    def cost(self) -> int:
        return sum(item.cost for item in self.items)

    @property
    def keys(self) -> list[int]:
        return [item.key for item in self.items]

    def aliases(self) -> dict[str, BatchItem]:
        return {alias_for(i): item for i, item in enumerate(self.items)}

    def to_request(self) -> tuple[str, dict]:
        """返回 (查询文档, 变量)。"""
        query = build_alias_query(self.shape, len(self.items))
        variables = {f"url{i}": item.url for i, item in enumerate(self.items)}
        return query, variables


class BatchBuilder:
    """
    贪心打包器。

    按输入顺序依次放入当前批次，若加入后超过软上限 (且批次非空)
    或达到条目上限则先封批。单个成本超过软上限的页面单独成批。
    """

    def __init__(self, soft_limit: int, max_items: int):
        if soft_limit <= 0 or max_items <= 0:
            raise ValueError("soft_limit 和 max_items 必须为正数")
        self.soft_limit = soft_limit
        self.max_items = max_items

    @classmethod
    def from_settings(cls, settings: Optional[CostSettings] = None) -> "BatchBuilder":
        settings = settings or get_settings().cost
        return cls(
            soft_limit=settings.require("bucket_soft_limit"),
            max_items=min(settings.max_pack_count, settings.max_first),
        )

    def pack(self, items: Iterable[BatchItem], shape: FieldShape) -> list[Batch]:
        batches: list[Batch] = []
        current = Batch(index=0, shape=shape)
        current_cost = 0

        for item in items:
            over_budget = current.items and current_cost + item.cost > self.soft_limit
            if over_budget or len(current.items) >= self.max_items:
                batches.append(current)
                current = Batch(index=len(batches), shape=shape)
                current_cost = 0
            if item.cost > self.soft_limit:
                logger.warning(f"页面 {item.url} 估算成本 {item.cost} 超过单批上限 {self.soft_limit}，单独成批")
            current.items.append(item)
            current_cost += item.cost

        if current.items:
            batches.append(current)
        return batches
