"""
查询成本估算。

上游按字段计费，连接 (connection) 字段按返回的边数计费。
估算值仅用于打包和调度，不要求与上游实际扣点完全一致。
"""
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from wikisync.core.config import CostSettings, get_settings


@dataclass(frozen=True)
class FieldShape:
    """
    一次页面查询包含的字段。

    revision_limit / vote_limit 为连接字段的 first 参数，0 表示不请求。
    """
    name: str
    attributions: bool = False
    alternate_titles: bool = False
    children: bool = False
    parent: bool = False
    source: bool = False
    text_content: bool = False
    revision_limit: int = 0
    vote_limit: int = 0


# Phase A / Phase B 只需要基础元数据
META_SHAPE = FieldShape(name="meta")
DETAIL_SHAPE = FieldShape(name="detail")
# Phase C 首次请求: 正文、归属以及修订/投票的第一页
DEEP_SHAPE = FieldShape(
    name="deep",
    attributions=True,
    source=True,
    text_content=True,
    revision_limit=100,
    vote_limit=100,
)


def estimate_page_cost(
    shape: FieldShape,
    weights: Mapping[str, int],
    min_factor: int = 5,
    revision_count: Optional[int] = None,
    vote_count: Optional[int] = None,
) -> int:
    """
    估算单个页面查询的点数。

    连接字段按 min(已知数量 + min_factor, first) 条边计费；
    数量未知时按 first 上限估算。
    """
    cost = weights.get("wikidotPage", 1)
    flags = {
        "attributions": shape.attributions,
        "alternateTitles": shape.alternate_titles,
        "children": shape.children,
        "parent": shape.parent,
        "source": shape.source,
        "textContent": shape.text_content,
    }
    for field_name, included in flags.items():
        if included:
            cost += weights.get(field_name, 1)

    if shape.revision_limit:
        cost += _edges(revision_count, min_factor, shape.revision_limit) * weights.get("revisionEdge", 1)
    if shape.vote_limit:
        cost += _edges(vote_count, min_factor, shape.vote_limit) * weights.get("voteEdge", 1)
    return cost


def _edges(count: Optional[int], min_factor: int, limit: int) -> int:
    if count is None:
        return limit
    return min(max(count, 0) + min_factor, limit)


def estimate_query_cost(page_costs: Iterable[int]) -> int:
    """批量查询的成本为各别名页面成本之和。"""
    return sum(page_costs)


class CostEstimator:
    """绑定了权重表的成本估算器。"""

    def __init__(self, weights: Mapping[str, int], min_factor: int = 5, simple_page_threshold: Optional[int] = None):
        self.weights = dict(weights)
        self.min_factor = min_factor
        self.simple_page_threshold = simple_page_threshold

    @classmethod
    def from_settings(cls, settings: Optional[CostSettings] = None) -> "CostEstimator":
        settings = settings or get_settings().cost
        return cls(
            weights=settings.weights,
            min_factor=settings.min_factor,
            simple_page_threshold=settings.require("simple_page_threshold"),
        )

    def page_cost(
        self,
        shape: FieldShape,
        revision_count: Optional[int] = None,
        vote_count: Optional[int] = None,
    ) -> int:
        return estimate_page_cost(shape, self.weights, self.min_factor, revision_count, vote_count)

    def is_simple(self, cost: int) -> bool:
        """成本不超过阈值的页面可以内联处理，超过的延后到 Phase C。"""
        if self.simple_page_threshold is None:
            return True
        return cost <= self.simple_page_threshold
